"""USB target discovery via lsblk."""

import json
import logging

from diskswap import config
from diskswap.models.device import Device, RawBlockDevice
from diskswap.services import process
from diskswap.utils.formatting import format_disk_size

logger = logging.getLogger("diskswap.devices")


async def get_boot_disk() -> str:
    """Kernel name of the disk holding the running root filesystem."""
    result = await process.run(["findmnt", "--noheadings", "--output", "SOURCE", "--target", "/"])
    root_source = result.stdout.strip()
    result = await process.run_quiet(["lsblk", "--noheadings", "--output", "PKNAME", root_source])
    parent = result.stdout.strip().splitlines()[0].strip() if result.stdout.strip() else ""
    return (parent or root_source).replace("/dev/", "")


def is_safe_target(dev: RawBlockDevice, boot_disk: str) -> bool:
    """A target must be a USB disk between 8 GB and 2 TB that we did not boot from."""
    if dev.type != "disk" or dev.name == boot_disk:
        return False
    if dev.tran != "usb":
        return False
    return config.MIN_TARGET_SIZE <= (dev.size or 0) <= config.MAX_TARGET_SIZE


def has_bootable_os(dev: RawBlockDevice) -> bool:
    return any(child.label == config.BOOT_PARTITION_LABEL for child in dev.children)


def to_device(dev: RawBlockDevice) -> Device:
    return Device(
        name=dev.name,
        path=f"/dev/{dev.name}",
        size=dev.size or 0,
        size_human=format_disk_size(dev.size or 0),
        vendor=(dev.vendor or "").strip(),
        model=(dev.model or "").strip(),
        tran=dev.tran or "unknown",
        serial=(dev.serial or "").strip(),
        has_os=has_bootable_os(dev),
    )


async def list_devices() -> list[Device]:
    """List all USB block devices that are safe provisioning targets."""
    boot_disk = await get_boot_disk()
    result = await process.run(
        ["lsblk", "--json", "-b", "-o", "NAME,SIZE,TYPE,TRAN,VENDOR,MODEL,SERIAL,LABEL"]
    )
    raw = json.loads(result.stdout).get("blockdevices", [])
    devices = [RawBlockDevice(**entry) for entry in raw]
    targets = [to_device(d) for d in devices if is_safe_target(d, boot_disk)]
    logger.debug(f"Found {len(targets)} target device(s), boot disk {boot_disk}")
    return targets
