"""Job store: the single clone job, its persistence and its observers."""

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import List, Optional, Set

from diskswap import config
from diskswap.errors import JobLockedError
from diskswap.models.device import Device
from diskswap.models.events import (
    CancelledEvent,
    DoneEvent,
    ErrorEvent,
    JobEvent,
    StageUpdateEvent,
)
from diskswap.models.job import Job, StageLink
from diskswap.models.status import JobStatus, StageName, StageStatus

INTERRUPTED_MESSAGE = "Interrupted by add-on restart"


class JobStore:
    """Singleton owner of the current clone job.

    Manages:
    - The in-memory job (at most one ``in_progress`` job system-wide)
    - Persistent copy at ``state_file_path`` (rehydrated after restarts)
    - Observer queues receiving every stage/terminal event

    All job mutations go through this class so persistence and broadcast
    always agree.
    """

    _instance: Optional["JobStore"] = None

    def __new__(cls):
        """Implement singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        """Initialize job store (only once due to singleton)."""
        if self._initialized:
            return

        self.logger = logging.getLogger("diskswap.jobs")
        self.state_file_path = Path(config.JOB_STATE_FILE)
        self.queue_size = 256

        self._job: Optional[Job] = None
        self._subscribers: Set[asyncio.Queue] = set()

        self._initialized = True
        self.logger.info("JobStore initialized")

    # -- Queries -------------------------------------------------------

    def get_current_job(self) -> Optional[Job]:
        """Snapshot of the current job (a copy; mutate via the store only)."""
        return self._job.model_copy(deep=True) if self._job else None

    def is_locked(self) -> bool:
        return self._job is not None and self._job.status == JobStatus.IN_PROGRESS

    # -- Mutations -----------------------------------------------------

    def create_job(self, device: Device, include_sandbox: bool = True) -> Job:
        """Start a new job, superseding any terminal one.

        Raises:
            JobLockedError: A job is already in progress
        """
        if self.is_locked():
            raise JobLockedError("A clone operation is already in progress.")

        self._job = Job.new(uuid.uuid4().hex[:8], device, include_sandbox=include_sandbox)
        self.logger.info(f"Created job {self._job.id} for {device.path}")
        self.save_state()
        return self.get_current_job()

    def update_stage(
        self,
        stage: StageName,
        status: StageStatus,
        progress: int,
        speed: Optional[float] = None,
        eta: Optional[float] = None,
        description: Optional[str] = None,
        link: Optional[StageLink] = None,
    ) -> None:
        """Update a stage, persist, and broadcast a ``stage_update`` event.

        Args:
            stage: Stage to update
            status: New stage status
            progress: Percentage completion (clamped to 0-100)
            speed: Throughput in bytes/second
            eta: Estimated seconds remaining
            description: Human-readable detail (may end with an ellipsis)
            link: External reference shown with the stage
        """
        if self._job is None or stage not in self._job.stages:
            return

        progress = max(0, min(100, int(progress)))
        current = self._job.stages[stage]
        current.status = status
        current.progress = progress
        current.speed = speed
        current.eta = eta
        current.description = description
        if link is not None:
            current.link = link

        self.logger.debug(f"Stage {stage.value}: {status.value} {progress}% {description or ''}")
        self.save_state()
        self._broadcast(
            StageUpdateEvent(
                stage=stage,
                status=status,
                progress=progress,
                speed=speed,
                eta=eta,
                description=description,
                link=current.link,
            )
        )

    def set_backup_name(self, name: str) -> None:
        if self._job is None:
            return
        self._job.backup_name = name
        self.save_state()

    def complete_job(self) -> None:
        if self._job is None:
            return
        self._job.status = JobStatus.COMPLETED
        self.logger.info(f"Job {self._job.id} completed")
        self.save_state()
        self._broadcast(DoneEvent(backup_name=self._job.backup_name))

    def fail_job(self, stage: StageName, message: str) -> None:
        """Mark ``stage`` and the job failed with ``message``."""
        if self._job is None:
            return
        self._job.status = JobStatus.FAILED
        self._job.error = message
        if stage in self._job.stages:
            self._job.stages[stage].status = StageStatus.FAILED
        self.logger.error(f"Job {self._job.id} failed at {stage.value}: {message}")
        self.save_state()
        self._broadcast(ErrorEvent(stage=stage, message=message))

    def clear_job(self) -> None:
        """Drop the job after a cancellation and tell every observer."""
        if self._job is None:
            return
        self.logger.info(f"Job {self._job.id} cleared")
        self._job = None
        self.delete_state()
        self._broadcast(CancelledEvent())

    def dismiss_job(self) -> None:
        """Forget an acknowledged job without notifying observers."""
        if self._job is not None:
            self.logger.info(f"Job {self._job.id} dismissed")
        self._job = None
        self.delete_state()

    # -- Observers -----------------------------------------------------

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def snapshot_events(self) -> List[JobEvent]:
        """Replay for a newly connected observer: every stage, then the outcome."""
        job = self._job
        if job is None:
            return []
        events: List[JobEvent] = [
            StageUpdateEvent(
                stage=s.name,
                status=s.status,
                progress=s.progress,
                speed=s.speed,
                eta=s.eta,
                description=s.description,
                link=s.link,
            )
            for s in job.stages.values()
        ]
        if job.status == JobStatus.COMPLETED:
            events.append(DoneEvent(backup_name=job.backup_name))
        elif job.status == JobStatus.FAILED and job.error:
            events.append(
                ErrorEvent(stage=job.failed_stage() or StageName.BACKUP, message=job.error)
            )
        return events

    def _broadcast(self, event: JobEvent) -> None:
        # Slow observers lose events rather than stalling the pipeline
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.logger.warning(f"Observer queue full, dropping {event.type} event")

    # -- Persistence ---------------------------------------------------

    def load_state(self) -> Optional[Job]:
        """Load the persisted job, deleting the file if it is corrupt."""
        if not self.state_file_path.exists():
            self.logger.debug("No job state file found")
            return None

        try:
            with open(self.state_file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            job = Job(**data)
            self.logger.info(f"Loaded job {job.id}: status={job.status.value}")
            return job
        except Exception as e:
            self.logger.error(f"Failed to load job state file: {e}", exc_info=True)
            self.state_file_path.unlink(missing_ok=True)
            return None

    def save_state(self) -> None:
        """Persist the current job. Failures are logged, not raised."""
        if self._job is None:
            return
        try:
            self.state_file_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.state_file_path.with_suffix(".tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self._job.model_dump(mode="json"), f, indent=2)
            tmp_path.replace(self.state_file_path)
        except OSError as e:
            self.logger.error(f"Failed to save job state file: {e}", exc_info=True)

    def delete_state(self) -> None:
        if self.state_file_path.exists():
            self.state_file_path.unlink()
            self.logger.info("Deleted job state file")

    def rehydrate(self) -> Optional[Job]:
        """Restore the persisted job after a process restart.

        Nothing survives a restart mid-stage. An interrupted interactive
        sandbox is treated as finished (the disk was already complete
        before it started); any other interrupted stage fails the job.
        """
        job = self.load_state()
        if job is None:
            return None

        interrupted = job.active_stage()
        if interrupted == StageName.SANDBOX:
            sandbox = job.stages[StageName.SANDBOX]
            sandbox.status = StageStatus.COMPLETED
            sandbox.progress = 100
            sandbox.description = None
            sandbox.speed = None
            sandbox.eta = None
            if job.all_completed():
                job.status = JobStatus.COMPLETED
            self.logger.warning("Sandbox session did not survive restart, marked completed")
        elif interrupted is not None:
            job.stages[interrupted].status = StageStatus.FAILED
            job.status = JobStatus.FAILED
            job.error = INTERRUPTED_MESSAGE
            self.logger.warning(f"Stage {interrupted.value} interrupted by restart, job failed")

        if job.status == JobStatus.IN_PROGRESS:
            # Crashed between two stages
            unfinished = [s for s in job.stages.values() if s.status != StageStatus.COMPLETED]
            if unfinished:
                unfinished[0].status = StageStatus.FAILED
                job.status = JobStatus.FAILED
                job.error = INTERRUPTED_MESSAGE
            else:
                job.status = JobStatus.COMPLETED

        self._job = job
        self.save_state()
        return self.get_current_job()
