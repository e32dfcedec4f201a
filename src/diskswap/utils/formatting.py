"""Human-readable size strings."""

KB = 1024
MB = 1024**2
GB = 1024**3
TB = 1024**4


def format_bytes(size: int) -> str:
    if size >= TB:
        return f"{size / TB:.1f} TB"
    if size >= GB:
        return f"{size / GB:.1f} GB"
    return f"{round(size / MB)} MB"


def format_disk_size(size: int) -> str:
    """Coarser form used for whole disks (``30 GB``)."""
    if size >= TB:
        return f"{size / TB:.1f} TB"
    return f"{round(size / GB)} GB"
