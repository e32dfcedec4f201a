"""Clone job model persisted across add-on restarts."""

import time
from typing import Optional
from pydantic import BaseModel, Field

from diskswap.models.device import Device
from diskswap.models.status import JobStatus, StageName, StageStatus, STAGE_ORDER


class StageLink(BaseModel):
    """External reference shown next to a stage."""

    text: str
    url: str


class Stage(BaseModel):
    name: StageName
    status: StageStatus = StageStatus.PENDING
    progress: int = Field(0, ge=0, le=100)
    description: Optional[str] = None
    speed: Optional[float] = Field(None, description="Bytes per second")
    eta: Optional[float] = Field(None, description="Seconds remaining")
    link: Optional[StageLink] = None


class Job(BaseModel):
    """The single in-flight or terminal provisioning job."""

    id: str = Field(..., description="Short opaque identifier")
    status: JobStatus = JobStatus.IN_PROGRESS
    device: Device
    stages: dict[StageName, Stage]
    error: Optional[str] = None
    backup_name: Optional[str] = None
    created_at: float = Field(default_factory=time.time)

    @classmethod
    def new(cls, job_id: str, device: Device, include_sandbox: bool = True) -> "Job":
        names = [n for n in STAGE_ORDER if include_sandbox or n != StageName.SANDBOX]
        return cls(
            id=job_id,
            device=device,
            stages={name: Stage(name=name) for name in names},
        )

    def active_stage(self) -> Optional[StageName]:
        """First stage currently ``in_progress``, if any."""
        for stage in self.stages.values():
            if stage.status == StageStatus.IN_PROGRESS:
                return stage.name
        return None

    def failed_stage(self) -> Optional[StageName]:
        for stage in self.stages.values():
            if stage.status == StageStatus.FAILED:
                return stage.name
        return None

    def all_completed(self) -> bool:
        return all(s.status == StageStatus.COMPLETED for s in self.stages.values())
