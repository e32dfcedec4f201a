"""Clone pipeline: backup → download → flash → inject → sandbox."""

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from diskswap import config
from diskswap.errors import (
    BackupError,
    CloneCancelledError,
    JobLockedError,
    PreflightError,
    SupervisorError,
)
from diskswap.models.device import Device
from diskswap.models.job import Job, StageLink
from diskswap.models.status import JobStatus, StageName, StageStatus
from diskswap.services import devices, images
from diskswap.services.flasher import Flasher
from diskswap.services.images import ImageStore
from diskswap.services.injector import BackupInjector
from diskswap.services.job_store import JobStore
from diskswap.services.sandbox import SandboxOrchestrator
from diskswap.services.supervisor import SupervisorClient, machine_to_board_slug
from diskswap.utils.cancellation import CancelToken
from diskswap.utils.formatting import MB

RELEASE_PAGE_URL = "https://github.com/home-assistant/operating-system/releases/tag"


@dataclass
class JobContext:
    """Working state of one pipeline run, threaded through every stage."""

    job_id: str
    device_path: str
    backup_slug: Optional[str] = None
    skip_flash: bool = False
    skip_sandbox: bool = False
    token: CancelToken = field(default_factory=CancelToken)
    machine: Optional[str] = None
    board_slug: Optional[str] = None
    os_version: Optional[str] = None
    image_path: Optional[Path] = None


class PipelineOrchestrator:
    """Runs at most one clone pipeline as a background task.

    Callers get the Job back as soon as pre-flight checks pass; progress
    and the outcome are only observable through the JobStore.
    """

    def __init__(
        self,
        job_store: Optional[JobStore] = None,
        supervisor: Optional[SupervisorClient] = None,
        image_store: Optional[ImageStore] = None,
        flasher: Optional[Flasher] = None,
        injector: Optional[BackupInjector] = None,
        sandbox: Optional[SandboxOrchestrator] = None,
        list_devices: Callable[[], Awaitable[List[Device]]] = devices.list_devices,
        min_free_space: int = config.MIN_DOWNLOAD_SPACE,
        backup_poll_interval: float = 2.0,
    ):
        self.logger = logging.getLogger("diskswap.pipeline")
        self.job_store = job_store or JobStore()
        self.supervisor = supervisor or SupervisorClient()
        self.images = image_store or ImageStore()
        self.flasher = flasher or Flasher()
        self.injector = injector or BackupInjector()
        self.sandbox = sandbox or SandboxOrchestrator()
        self.list_devices = list_devices
        self.min_free_space = min_free_space
        self.backup_poll_interval = backup_poll_interval

        self._context: Optional[JobContext] = None
        self._task: Optional[asyncio.Task] = None

    # -- Control -------------------------------------------------------

    async def run(
        self,
        device_path: str,
        backup_slug: Optional[str] = None,
        skip_flash: bool = False,
        skip_sandbox: bool = False,
    ) -> Job:
        """Validate the request, create the job and start the pipeline.

        Raises:
            JobLockedError: A job is already in progress
            PreflightError: Not enough space or unknown target
        """
        if self._task is not None and not self._task.done():
            if self.job_store.is_locked():
                raise JobLockedError("A clone operation is already in progress.")
            raise PreflightError("The previous clone is still shutting down, try again shortly.")
        if self.job_store.is_locked():
            raise JobLockedError("A clone operation is already in progress.")

        device = await self.preflight(device_path, skip_flash)
        job = self.job_store.create_job(device, include_sandbox=not skip_sandbox)

        ctx = JobContext(
            job_id=job.id,
            device_path=device.path,
            backup_slug=backup_slug,
            skip_flash=skip_flash,
            skip_sandbox=skip_sandbox,
        )
        self._context = ctx
        self._task = asyncio.create_task(self._run_stages(ctx))
        self.logger.info(
            f"Job {job.id} started: device={device.path}, backup={backup_slug or 'new'}, "
            f"skip_flash={skip_flash}, skip_sandbox={skip_sandbox}"
        )
        return job

    async def preflight(self, device_path: str, skip_flash: bool = False) -> Device:
        if not skip_flash:
            free = shutil.disk_usage(self.images.image_dir).free
            if free < self.min_free_space:
                raise PreflightError(
                    f"Not enough disk space for image download. Need "
                    f"~{self.min_free_space // MB} MB, only {free // MB} MB free."
                )

        for device in await self.list_devices():
            if device.path == device_path:
                return device
        raise PreflightError(
            f"Target device {device_path} not found or is not a safe USB target."
        )

    def cancel(self) -> bool:
        """Abort the running pipeline and drop its job.

        Returns:
            True if there was a job to cancel
        """
        ctx = self._context
        had_job = self.job_store.get_current_job() is not None
        if ctx is not None:
            self.logger.info(f"Cancelling job {ctx.job_id}")
            ctx.token.cancel()
        self.job_store.clear_job()
        return ctx is not None or had_job

    def signal_sandbox_done(self) -> bool:
        return self.sandbox.signal_done()

    @property
    def sandbox_proxy_url(self) -> Optional[str]:
        return self.sandbox.proxy_url

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Stop a running pipeline on process exit, keeping its job persisted.

        The job stays ``in_progress`` on disk and is failed as interrupted
        when the store is rehydrated on the next start.
        """
        ctx = self._context
        if ctx is None or self._task is None or self._task.done():
            return
        self.logger.warning(f"Shutting down with job {ctx.job_id} still running")
        ctx.token.cancel()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout)
        except asyncio.TimeoutError:
            self.logger.error("Pipeline did not stop in time")

    async def wait(self) -> None:
        """Wait for the background pipeline task (tests)."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    # -- Stage sequencing ----------------------------------------------

    async def _run_stages(self, ctx: JobContext) -> None:
        token = ctx.token
        try:
            if ctx.backup_slug:
                self.logger.info(f"Using existing backup {ctx.backup_slug}")
                self.job_store.update_stage(StageName.BACKUP, StageStatus.COMPLETED, 100)
            else:
                await self.run_backup_stage(ctx)
            await self._lookup_backup_name(ctx)
            token.raise_if_cancelled()

            if ctx.skip_flash:
                self.logger.info("Skipping download and flash, device already has the OS")
                self.job_store.update_stage(StageName.DOWNLOAD, StageStatus.COMPLETED, 100)
                self.job_store.update_stage(StageName.FLASH, StageStatus.COMPLETED, 100)
            else:
                await self.run_download_stage(ctx)
                token.raise_if_cancelled()
                await self.run_flash_stage(ctx)
            token.raise_if_cancelled()

            await self.run_inject_stage(ctx)

            if not ctx.skip_sandbox:
                token.raise_if_cancelled()
                await self.run_sandbox_stage(ctx)
            token.raise_if_cancelled()

            self.job_store.complete_job()
            self.logger.info(f"Job {ctx.job_id} completed successfully")
        except CloneCancelledError:
            self.logger.info(f"Job {ctx.job_id} cancelled")
        except Exception as e:
            if token.cancelled:
                self.logger.info(f"Job {ctx.job_id} cancelled ({e})")
                return
            self.logger.error(f"Job {ctx.job_id} failed: {e}", exc_info=True)
            job = self.job_store.get_current_job()
            if job is not None and job.id == ctx.job_id and job.status == JobStatus.IN_PROGRESS:
                self.job_store.fail_job(job.active_stage() or StageName.BACKUP, str(e))
        finally:
            if self._context is ctx:
                self._context = None

    async def _lookup_backup_name(self, ctx: JobContext) -> None:
        try:
            backup = await self.supervisor.find_backup(ctx.backup_slug)
        except SupervisorError as e:
            self.logger.warning(f"Could not look up backup name: {e}")
            return
        if backup is not None:
            self.job_store.set_backup_name(backup.name)

    # -- Stages --------------------------------------------------------

    async def run_backup_stage(self, ctx: JobContext) -> None:
        """Create a full backup through the Supervisor and wait for it."""
        self.job_store.update_stage(
            StageName.BACKUP, StageStatus.IN_PROGRESS, 0, description="Creating backup…"
        )
        job_id = await self.supervisor.create_full_backup()
        self.logger.info(f"Backup job created: {job_id}")

        while True:
            await ctx.token.sleep(self.backup_poll_interval)
            status = await self.supervisor.poll_job(job_id)
            self.logger.debug(f"Backup poll: {status.model_dump()}")

            if status.errors:
                messages = [
                    e.get("message", str(e)) if isinstance(e, dict) else str(e)
                    for e in status.errors
                ]
                raise BackupError(f"Backup failed: {', '.join(messages)}")

            if status.done:
                if not status.reference:
                    raise BackupError("Backup completed but no slug returned.")
                await asyncio.to_thread(self.injector.locate_backup, status.reference)
                ctx.backup_slug = status.reference
                self.logger.info(f"Backup done: {ctx.backup_slug}")
                self.job_store.update_stage(StageName.BACKUP, StageStatus.COMPLETED, 100)
                return

            self.job_store.update_stage(
                StageName.BACKUP,
                StageStatus.IN_PROGRESS,
                min(99, round(status.progress)),
                description="Creating backup…",
            )

    async def _resolve_platform(self, ctx: JobContext) -> None:
        info, os_info = await asyncio.gather(
            self.supervisor.get_info(), self.supervisor.get_os_info()
        )
        ctx.machine = info.machine
        ctx.board_slug = machine_to_board_slug(info.machine)
        ctx.os_version = os_info.version

    async def run_download_stage(self, ctx: JobContext) -> None:
        self.job_store.update_stage(
            StageName.DOWNLOAD, StageStatus.IN_PROGRESS, 0, description="Checking image cache…"
        )
        await self._resolve_platform(ctx)

        url = images.download_url(ctx.board_slug, ctx.os_version)
        sha256_url = images.checksum_url(url)
        ctx.image_path = self.images.image_path(ctx.board_slug, ctx.os_version)
        link = StageLink(
            text=f"Home Assistant OS {ctx.os_version}",
            url=f"{RELEASE_PAGE_URL}/{ctx.os_version}",
        )

        if await self.images.is_cache_valid(ctx.image_path, sha256_url):
            self.logger.info(f"Using cached image {ctx.image_path}")
            self.job_store.update_stage(
                StageName.DOWNLOAD, StageStatus.COMPLETED, 100,
                description="Using cached image", link=link,
            )
            return

        ctx.token.raise_if_cancelled()

        def on_progress(percent: int, speed: Optional[float], eta: Optional[float]) -> None:
            self.job_store.update_stage(
                StageName.DOWNLOAD, StageStatus.IN_PROGRESS, percent, speed, eta,
                description="Downloading image…", link=link,
            )

        try:
            await self.images.download(url, ctx.image_path, on_progress, ctx.token)
            self.job_store.update_stage(
                StageName.DOWNLOAD, StageStatus.IN_PROGRESS, 99,
                description="Verifying checksum…", link=link,
            )
            await self.images.verify_checksum(ctx.image_path, sha256_url)
        except CloneCancelledError:
            raise
        except Exception:
            self.images.cleanup(ctx.image_path)
            raise

        self.job_store.update_stage(StageName.DOWNLOAD, StageStatus.COMPLETED, 100, link=link)

    async def run_flash_stage(self, ctx: JobContext) -> None:
        self.job_store.update_stage(
            StageName.FLASH, StageStatus.IN_PROGRESS, 0, description="Writing image…"
        )

        def on_progress(percent: int, speed: Optional[float], eta: Optional[float]) -> None:
            self.job_store.update_stage(
                StageName.FLASH, StageStatus.IN_PROGRESS, min(percent, 99), speed, eta,
                description="Writing image…",
            )

        await self.flasher.flash(ctx.image_path, ctx.device_path, on_progress, ctx.token)
        self.job_store.update_stage(
            StageName.FLASH, StageStatus.IN_PROGRESS, 99, description="Re-reading partitions…"
        )
        await self.flasher.reprobe_partitions(ctx.device_path)
        self.job_store.update_stage(StageName.FLASH, StageStatus.COMPLETED, 100)

    async def run_inject_stage(self, ctx: JobContext) -> None:
        self.job_store.update_stage(StageName.INJECT, StageStatus.IN_PROGRESS, 0)

        def on_progress(
            percent: int, description: Optional[str], speed: Optional[float], eta: Optional[float]
        ) -> None:
            self.job_store.update_stage(
                StageName.INJECT, StageStatus.IN_PROGRESS, percent, speed, eta, description
            )

        await self.injector.inject(ctx.device_path, ctx.backup_slug, on_progress, ctx.token)
        self.job_store.update_stage(StageName.INJECT, StageStatus.COMPLETED, 100)

    async def run_sandbox_stage(self, ctx: JobContext) -> None:
        """Interactive restore session. Best effort: failure does not fail the job."""
        self.job_store.update_stage(
            StageName.SANDBOX, StageStatus.IN_PROGRESS, 0, description="Starting sandbox…"
        )
        last_percent = 0

        def on_progress(percent: int, description: Optional[str]) -> None:
            nonlocal last_percent
            last_percent = percent
            self.job_store.update_stage(
                StageName.SANDBOX, StageStatus.IN_PROGRESS, percent, description=description
            )

        try:
            if not ctx.machine:
                ctx.machine = (await self.supervisor.get_info()).machine
            await self.sandbox.run(ctx.device_path, ctx.machine, on_progress, ctx.token)
        except CloneCancelledError:
            raise
        except Exception as e:
            if ctx.token.cancelled:
                raise CloneCancelledError() from e
            self.logger.warning(
                f"Sandbox failed, disk will auto-restore on first boot instead: {e}",
                exc_info=True,
            )
            self.job_store.update_stage(
                StageName.SANDBOX, StageStatus.FAILED, last_percent, description=str(e)
            )
            return

        self.job_store.update_stage(StageName.SANDBOX, StageStatus.COMPLETED, 100)


_orchestrator: Optional[PipelineOrchestrator] = None


def get_orchestrator() -> PipelineOrchestrator:
    """Process-wide orchestrator (FastAPI dependency)."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = PipelineOrchestrator()
    return _orchestrator
