"""Exception hierarchy for the provisioning pipeline."""

from typing import Sequence


class DiskSwapError(Exception):
    """Base class for all Disk Swap errors."""


class PreflightError(DiskSwapError):
    """Request rejected before any job state was created."""


class JobLockedError(PreflightError):
    """Another clone job is already in progress."""


class CloneCancelledError(DiskSwapError):
    """The running clone was cancelled by the user.

    Never recorded as a stage failure.
    """

    def __init__(self, message: str = "Clone cancelled"):
        super().__init__(message)


class CommandError(DiskSwapError):
    """An external command exited non-zero."""

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = ""):
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr and stderr.strip() else ""
        super().__init__(
            f"Command failed ({returncode}): {' '.join(self.argv)}{detail}"
        )


class PartitionNotFoundError(DiskSwapError):
    pass


class GeometryError(DiskSwapError):
    pass


class ImageError(DiskSwapError):
    pass


class ChecksumMismatchError(ImageError):
    pass


class FlashError(DiskSwapError):
    pass


class BackupError(DiskSwapError):
    pass


class BackupNotFoundError(BackupError):
    pass


class SandboxError(DiskSwapError):
    pass


class SupervisorError(DiskSwapError):
    """The platform (Supervisor) API returned an error."""


class UnsupportedMachineError(SupervisorError):
    """The host machine type has no known OS image board."""
