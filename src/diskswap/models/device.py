"""Block device models."""

from typing import Optional
from pydantic import BaseModel, Field


class RawBlockDevice(BaseModel):
    """One entry of ``lsblk --json -b`` output."""

    name: str
    size: Optional[int] = 0
    type: str = ""
    tran: Optional[str] = None
    vendor: Optional[str] = None
    model: Optional[str] = None
    serial: Optional[str] = None
    label: Optional[str] = None
    children: list["RawBlockDevice"] = Field(default_factory=list)


RawBlockDevice.model_rebuild()


class Device(BaseModel):
    """A USB disk that is a safe provisioning target."""

    name: str = Field(..., description="Kernel name (e.g. 'sda')")
    path: str = Field(..., description="Device node (e.g. '/dev/sda')")
    size: int = Field(..., ge=0, description="Size in bytes")
    size_human: str = Field(..., description="Size for display (e.g. '30 GB')")
    vendor: str = ""
    model: str = ""
    tran: str = "unknown"
    serial: str = ""
    has_os: bool = Field(
        False, description="Device already carries a bootable OS (flash may be skipped)"
    )


class PartitionGeometry(BaseModel):
    """Byte range of one partition within its whole-disk device."""

    offset: int = Field(..., ge=0)
    size: int = Field(..., gt=0)
