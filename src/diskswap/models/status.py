"""Status enums for clone jobs and their stages."""

from enum import Enum


class StageName(str, Enum):
    """Pipeline stages, in execution order.

    backup → download → flash → inject → sandbox (optional)
    """

    BACKUP = "backup"
    DOWNLOAD = "download"
    FLASH = "flash"
    INJECT = "inject"
    SANDBOX = "sandbox"


STAGE_ORDER = [
    StageName.BACKUP,
    StageName.DOWNLOAD,
    StageName.FLASH,
    StageName.INJECT,
    StageName.SANDBOX,
]


class StageStatus(str, Enum):
    """Per-stage lifecycle.

    pending → in_progress → completed
                   ↓
                 failed
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
