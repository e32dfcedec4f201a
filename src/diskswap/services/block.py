"""Block-device primitives: partitions, loop devices, filesystems, mounts.

Filesystem work on the target disk always goes through a loop device bound
to exactly one partition's byte range. Mounting the partition node directly
would share the page cache with the whole-disk node the flasher just wrote
through, and stale cached blocks could shadow the fresh image.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from diskswap import config
from diskswap.errors import CommandError, GeometryError, PartitionNotFoundError
from diskswap.models.device import PartitionGeometry
from diskswap.services import process

logger = logging.getLogger("diskswap.block")

SYSFS_BLOCK = Path("/sys/class/block")
SECTOR_SIZE = 512  # sysfs start/size are always in 512-byte units


async def find_partition_by_label(device: str, label: str) -> str:
    """Return the partition node on ``device`` whose filesystem label is ``label``.

    Raises:
        PartitionNotFoundError: No partition carries the label
    """
    result = await process.run(["lsblk", "-nrpo", "NAME,LABEL", device])
    for line in result.stdout.splitlines():
        parts = line.split()
        if len(parts) >= 2 and _unescape(parts[1]) == label:
            return parts[0]
    raise PartitionNotFoundError(
        f"Could not find {label} partition on {device}. "
        f"Flash may have failed or partition layout is unexpected."
    )


def _unescape(value: str) -> str:
    # lsblk -r escapes whitespace as \x20
    return value.encode().decode("unicode_escape")


def _sysfs_value(partition: str, attribute: str) -> int:
    path = SYSFS_BLOCK / Path(partition).name / attribute
    try:
        return int(path.read_text().strip())
    except (OSError, ValueError) as e:
        raise GeometryError(f"Cannot read {attribute} of {partition}: {e}") from e


def partition_geometry(partition: str) -> PartitionGeometry:
    """Byte offset and size of ``partition`` within its parent disk.

    Raises:
        GeometryError: sysfs has no (or a nonsensical) entry for the partition
    """
    start = _sysfs_value(partition, "start")
    size = _sysfs_value(partition, "size")
    if size <= 0:
        raise GeometryError(f"Partition {partition} has zero size")
    geometry = PartitionGeometry(offset=start * SECTOR_SIZE, size=size * SECTOR_SIZE)
    logger.debug(f"Geometry of {partition}: offset={geometry.offset}, size={geometry.size}")
    return geometry


def partition_number(partition: str) -> int:
    return _sysfs_value(partition, "partition")


async def settle(device: str) -> None:
    """Ask the kernel to re-read ``device`` and wait for udev. Best effort."""
    await process.run_quiet(["partprobe", device])
    await process.run_quiet(["udevadm", "settle", "--timeout=5"])


async def bind_loop(
    offset: int, size: int, device: str, loop: str = config.LOOP_DEVICE
) -> str:
    """Bind ``loop`` to ``size`` bytes of ``device`` starting at ``offset``.

    Any previous binding of the same loop slot is torn down first.
    """
    await process.run_quiet(["losetup", "-d", loop])
    logger.info(f"Binding {loop} to {device}: offset={offset}, sizelimit={size}")
    await process.run(
        ["losetup", "-o", str(offset), "--sizelimit", str(size), loop, device]
    )
    return loop


async def unbind_loop(loop: str) -> None:
    """Detach ``loop``. Tolerates an already detached device; never raises."""
    result = await process.run_quiet(["losetup", "-d", loop])
    if result.ok:
        logger.info(f"Detached {loop}")


async def filesystem_type(path: str) -> Optional[str]:
    result = await process.run_quiet(["blkid", "-o", "value", "-s", "TYPE", path])
    fs_type = result.stdout.strip()
    return fs_type or None


async def format_filesystem(path: str, label: str = config.DATA_PARTITION_LABEL) -> None:
    """Create an ext4 filesystem on ``path``, wiping stale signatures first."""
    logger.warning(f"Formatting {path} as ext4 (label={label})")
    await process.run(["wipefs", "-a", path])
    await process.run(["mkfs.ext4", "-F", "-L", label, path])
    # Drop buffers so the next mount does not see pre-format blocks
    await process.run_quiet(["blockdev", "--flushbufs", path])


async def ensure_filesystem(path: str, label: str = config.DATA_PARTITION_LABEL) -> None:
    """Format ``path`` only if it carries no filesystem yet."""
    fs_type = await filesystem_type(path)
    if fs_type:
        logger.info(f"{path} already has a {fs_type} filesystem")
        return
    await format_filesystem(path, label)


async def grow_filesystem(path: str) -> None:
    """Check then resize the ext4 filesystem on ``path`` to fill its device."""
    result = await process.run(["e2fsck", "-fy", path], check=False)
    # 0 = clean, 1 = errors corrected
    if result.returncode not in (0, 1):
        raise CommandError(result.argv, result.returncode, result.stderr)
    await process.run(["resize2fs", path])


async def grow_partition(device: str, partition: str) -> None:
    """Extend ``partition`` to the end of ``device``.

    The freshly flashed image is smaller than the disk, so the GPT backup
    header sits in the middle of the disk until it is relocated.
    """
    number = partition_number(partition)
    await process.run_quiet(["sgdisk", "-e", device])
    await process.run(["parted", "-s", device, "resizepart", str(number), "100%"])
    await settle(device)


async def mount(source: str, mount_point: Path) -> None:
    Path(mount_point).mkdir(parents=True, exist_ok=True)
    await process.run(["mount", "-t", "ext4", "-o", "rw", source, str(mount_point)])
    logger.info(f"Mounted {source} at {mount_point}")


async def unmount(mount_point: Path) -> None:
    """Sync then unmount. Never raises: the mount may legitimately be absent."""
    await process.run_quiet(["sync"])
    result = await process.run_quiet(["umount", str(mount_point)])
    if result.ok:
        logger.info(f"Unmounted {mount_point}")


async def mount_with_repair(
    source: str, mount_point: Path, label: str = config.DATA_PARTITION_LABEL
) -> None:
    """Ensure a filesystem exists and mount it, reformatting once on failure."""
    await ensure_filesystem(source, label)
    try:
        await mount(source, mount_point)
    except CommandError as e:
        logger.warning(f"Mount of {source} failed ({e}), reformatting and retrying")
        await format_filesystem(source, label)
        await mount(source, mount_point)


@asynccontextmanager
async def data_partition(
    device: str,
    mount_point: Path = config.MOUNT_POINT,
    *,
    label: str = config.DATA_PARTITION_LABEL,
    loop: str = config.LOOP_DEVICE,
    grow: bool = False,
) -> AsyncIterator[Path]:
    """Mount the ``label`` partition of ``device`` through a loop device.

    Every successful loop bind is paired with exactly one unbind, on the
    success, error and cancellation paths alike.

    Args:
        device: Whole-disk device node
        mount_point: Where the partition gets mounted
        label: Filesystem label of the partition
        loop: Loop device slot to bind
        grow: Extend partition and filesystem to the end of the disk first

    Yields:
        The mount point
    """
    partition = await find_partition_by_label(device, label)
    if grow:
        await grow_partition(device, partition)
    geometry = partition_geometry(partition)
    await bind_loop(geometry.offset, geometry.size, device, loop)
    try:
        if grow:
            await ensure_filesystem(loop, label)
            await grow_filesystem(loop)
        await mount_with_repair(loop, mount_point, label)
        try:
            yield Path(mount_point)
        finally:
            await unmount(mount_point)
    finally:
        await unbind_loop(loop)
