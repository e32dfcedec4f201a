"""Pydantic models for HTTP API requests and responses."""

from typing import List, Optional
from pydantic import BaseModel, Field

from diskswap.models.device import Device
from diskswap.models.supervisor import BackupSelection, SupervisorBackup


class StartCloneRequest(BaseModel):
    """POST /api/start-clone payload.

    Example:
        {
            "device": "/dev/sdb",
            "backup_slug": "a1b2c3d4",
            "skip_flash": false,
            "skip_sandbox": false
        }
    """

    device: str = Field(
        ...,
        min_length=1,
        description="Target block device path",
        examples=["/dev/sdb"],
    )
    backup_slug: Optional[str] = Field(
        None, description="Existing backup to use; a new full backup is created when omitted"
    )
    skip_flash: bool = Field(False, description="Target already carries the OS")
    skip_sandbox: bool = Field(False, description="Skip the interactive restore session")

    def backup_selection(self) -> BackupSelection:
        """Existing backup when a slug was given, otherwise a new one."""
        if self.backup_slug:
            return BackupSelection(type="existing", slug=self.backup_slug)
        return BackupSelection(type="new")


class StartCloneResponse(BaseModel):
    job_id: str


class DevicesResponse(BaseModel):
    devices: List[Device]


class BackupsResponse(BaseModel):
    backups: List[SupervisorBackup]


class OkResponse(BaseModel):
    ok: bool = True


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[str] = None
