"""Payloads exchanged with the platform (Supervisor) API."""

from typing import Literal, Optional
from pydantic import BaseModel, Field


class SupervisorBackup(BaseModel):
    """Entry from GET /backups."""

    slug: str
    name: str
    date: str
    type: str = Field(..., description="'full' or 'partial'")
    size: float = Field(0, description="Size in MB as reported by the Supervisor")


class SupervisorJobStatus(BaseModel):
    """GET /jobs/{id} response data."""

    done: bool = False
    progress: float = 0
    reference: Optional[str] = None
    errors: list = Field(default_factory=list)


class SupervisorInfo(BaseModel):
    machine: str
    arch: str = ""
    supported: bool = True
    channel: str = "stable"


class OsInfo(BaseModel):
    version: str
    version_latest: Optional[str] = None
    board: Optional[str] = None


class HostInfo(BaseModel):
    """Subset of GET /host/info. Disk figures are GB floats."""

    hostname: Optional[str] = None
    disk_total: float = 0
    disk_used: float = 0
    disk_free: float = 0


class AddonInfo(BaseModel):
    slug: str = ""
    protected: bool = True


class SystemInfo(BaseModel):
    """Aggregated view returned by GET /api/system-info."""

    machine: str
    board_slug: str
    os_version: str
    os_version_latest: Optional[str] = None
    ip_address: str
    free_space_bytes: int
    free_space_human: str
    protected: bool = True
    addon_slug: str = ""


class BackupSelection(BaseModel):
    """User's choice of backup for a clone."""

    type: Literal["new", "existing"]
    slug: Optional[str] = None
    name: Optional[str] = None


class RestoreDescriptor(BaseModel):
    """Auto-restore file read by Home Assistant Core on first boot."""

    path: str
    password: Optional[str] = None
    remove_after_restore: bool = False
    restore_database: bool = True
    restore_homeassistant: bool = True


class ImageCacheInfo(BaseModel):
    cached: bool
    version: Optional[str] = None
    board: Optional[str] = None
    size_bytes: Optional[int] = None
    size_human: Optional[str] = None
