"""Backup injection onto a freshly flashed data partition."""

import asyncio
import json
import logging
import os
import shutil
import tarfile
from pathlib import Path
from typing import Callable, Optional

import aiofiles

from diskswap import config
from diskswap.errors import BackupNotFoundError, CloneCancelledError
from diskswap.models.supervisor import RestoreDescriptor
from diskswap.services import block, process
from diskswap.utils.cancellation import CancelToken
from diskswap.utils.progress import ThroughputMeter, scale_percent

# percent, description, speed, eta
ProgressCallback = Callable[[int, Optional[str], Optional[float], Optional[float]], None]

COPY_START = 3
COPY_END = 90
METADATA_MEMBERS = ("./backup.json", "backup.json")


def read_backup_metadata(archive: Path) -> Optional[dict]:
    """Return the embedded ``backup.json`` of a backup tar, or None if unreadable."""
    try:
        with tarfile.open(archive, "r:") as tar:
            for name in METADATA_MEMBERS:
                try:
                    member = tar.getmember(name)
                except KeyError:
                    continue
                f = tar.extractfile(member)
                if f is None:
                    return None
                return json.loads(f.read().decode("utf-8"))
    except (OSError, tarfile.TarError, ValueError):
        return None
    return None


class BackupInjector:
    """Copies a backup onto the target disk and arms first-boot auto-restore.

    Layout written on the data partition::

        supervisor/backup/{slug}.tar                 Supervisor's view
        supervisor/homeassistant/backups/{slug}.tar  Core's view (hard link)
        supervisor/homeassistant/.HA_RESTORE         auto-restore descriptor
    """

    def __init__(
        self,
        backup_dir: Path = config.BACKUP_DIR,
        mount_point: Path = config.MOUNT_POINT,
        loop_device: str = config.LOOP_DEVICE,
    ):
        self.logger = logging.getLogger("diskswap.injector")
        self.backup_dir = Path(backup_dir)
        self.mount_point = Path(mount_point)
        self.loop_device = loop_device
        self.chunk_size = 1024 * 1024

    def locate_backup(self, slug: str) -> Path:
        """Find the archive for ``slug``.

        Automatic backups are not always named after their slug, so when
        ``{slug}.tar`` is missing every archive's metadata is inspected.

        Raises:
            BackupNotFoundError: No archive declares this slug
        """
        fast_path = self.backup_dir / f"{slug}.tar"
        if fast_path.is_file():
            return fast_path

        self.logger.info(f"{fast_path.name} not found, scanning {self.backup_dir} metadata")
        for archive in sorted(self.backup_dir.glob("*.tar")):
            meta = read_backup_metadata(archive)
            if meta and meta.get("slug") == slug:
                self.logger.info(f"Backup {slug} found as {archive.name}")
                return archive

        raise BackupNotFoundError(f"Backup file for slug {slug} not found in {self.backup_dir}")

    async def inject(
        self,
        device_path: str,
        backup_slug: str,
        on_progress: ProgressCallback,
        token: Optional[CancelToken] = None,
    ) -> None:
        """Copy the backup onto ``device_path``'s data partition.

        Progress: 0-3% setup, 3-90% copy, 90-100% flush and teardown.
        Unmount and loop unbind always run, whatever the outcome.
        """
        source = await asyncio.to_thread(self.locate_backup, backup_slug)
        total = source.stat().st_size

        on_progress(0, "Preparing data partition…", None, None)
        await block.settle(device_path)
        if token is not None:
            token.raise_if_cancelled()

        async with block.data_partition(
            device_path, self.mount_point, loop=self.loop_device
        ) as mount:
            dest_dir = mount / config.SUPERVISOR_BACKUP_SUBDIR
            dest_dir.mkdir(parents=True, exist_ok=True)
            dest = dest_dir / f"{backup_slug}.tar"

            on_progress(COPY_START, "Copying backup…", None, None)
            await self._copy(source, dest, total, on_progress, token)

            if token is not None:
                token.raise_if_cancelled()
            self._link_for_core(mount, dest)
            self.write_restore_descriptor(mount, backup_slug)

            on_progress(COPY_END, "Flushing writes…", None, None)
            await process.run_quiet(["sync"])

        self.logger.info(f"Injected backup {backup_slug} onto {device_path}")

    async def _copy(
        self,
        source: Path,
        dest: Path,
        total: int,
        on_progress: ProgressCallback,
        token: Optional[CancelToken],
    ) -> None:
        meter = ThroughputMeter(total)
        copied = 0
        async with aiofiles.open(source, "rb") as src, aiofiles.open(dest, "wb") as dst:
            while True:
                if token is not None and token.cancelled:
                    raise CloneCancelledError()
                chunk = await src.read(self.chunk_size)
                if not chunk:
                    break
                await dst.write(chunk)
                copied += len(chunk)
                if meter.update(copied) or copied == total:
                    on_progress(
                        scale_percent(meter.percent, COPY_START, COPY_END),
                        "Copying backup…",
                        meter.speed or None,
                        meter.eta,
                    )
        self.logger.info(f"Copied {copied} bytes to {dest}")

    def _link_for_core(self, mount: Path, archive: Path) -> Path:
        """Expose ``archive`` in Core's own backup directory (hard link, else copy)."""
        core_dir = mount / config.CORE_BACKUP_SUBDIR
        core_dir.mkdir(parents=True, exist_ok=True)
        target = core_dir / archive.name
        target.unlink(missing_ok=True)
        try:
            os.link(archive, target)
        except OSError as e:
            self.logger.warning(f"Hard link failed ({e}), copying backup for Core")
            shutil.copy2(archive, target)
        return target

    def write_restore_descriptor(self, mount: Path, backup_slug: str) -> Path:
        descriptor = RestoreDescriptor(
            path=f"{config.CORE_BACKUP_PATH_IN_RUNTIME}/{backup_slug}.tar",
            restore_database=True,
            restore_homeassistant=True,
        )
        config_dir = mount / config.CORE_CONFIG_SUBDIR
        config_dir.mkdir(parents=True, exist_ok=True)
        path = config_dir / config.RESTORE_DESCRIPTOR_NAME
        path.write_text(json.dumps(descriptor.model_dump(mode="json")), encoding="utf-8")
        self.logger.info(f"Wrote auto-restore descriptor {path}")
        return path
