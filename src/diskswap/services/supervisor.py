"""Client for the platform (Home Assistant Supervisor) REST API."""

import asyncio
import logging
import os
from datetime import date
from typing import Any, Optional

import httpx

from diskswap import config
from diskswap.errors import SupervisorError, UnsupportedMachineError
from diskswap.models.supervisor import (
    AddonInfo,
    HostInfo,
    OsInfo,
    SupervisorBackup,
    SupervisorInfo,
    SupervisorJobStatus,
    SystemInfo,
)
from diskswap.utils.formatting import GB, format_bytes

MACHINE_TO_BOARD = {
    "raspberrypi3": "rpi3",
    "raspberrypi3-64": "rpi3-64",
    "raspberrypi4": "rpi4",
    "raspberrypi4-64": "rpi4-64",
    "raspberrypi5-64": "rpi5-64",
    "generic-x86-64": "generic-x86-64",
    "generic-aarch64": "generic-aarch64",
    "odroid-c2": "odroid-c2",
    "odroid-c4": "odroid-c4",
    "odroid-m1": "odroid-m1",
    "odroid-n2": "odroid-n2",
    "odroid-xu": "odroid-xu",
    "tinker": "tinker",
    "khadas-vim3": "khadas-vim3",
    "green": "green",
    "yellow": "yellow",
    "qemuarm-64": "generic-aarch64",
    "qemux86-64": "generic-x86-64",
}


def machine_to_board_slug(machine: str) -> str:
    """Map a Supervisor machine name to its OS image board slug.

    Raises:
        UnsupportedMachineError: If the machine has no published image
    """
    slug = MACHINE_TO_BOARD.get(machine)
    if not slug:
        raise UnsupportedMachineError(f'Unsupported machine type: "{machine}"')
    return slug


class SupervisorClient:
    """Thin async wrapper around the Supervisor API.

    All responses use the ``{"result": "ok", "data": {...}}`` envelope;
    anything else raises SupervisorError.
    """

    def __init__(
        self,
        base_url: str = config.SUPERVISOR_URL,
        token: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.logger = logging.getLogger("diskswap.supervisor")
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _headers(self) -> dict:
        token = self.token or os.environ.get("SUPERVISOR_TOKEN")
        if not token:
            raise SupervisorError(
                "SUPERVISOR_TOKEN not found. This add-on must run inside Home Assistant."
            )
        return {"Authorization": f"Bearer {token}"}

    async def _request(self, method: str, path: str, body: Optional[dict] = None) -> Any:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
            try:
                response = await client.request(
                    method, path, headers=self._headers(), json=body
                )
            except httpx.HTTPError as e:
                raise SupervisorError(f"Supervisor API {path} unreachable: {e}") from e

        if response.status_code >= 400:
            raise SupervisorError(
                f"Supervisor API {path} returned {response.status_code}: {response.text}"
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise SupervisorError(f"Supervisor API {path} returned invalid JSON") from e

        if payload.get("result") != "ok":
            raise SupervisorError(
                f'Supervisor API {path} result="{payload.get("result")}": '
                f'{payload.get("message") or "unknown error"}'
            )
        return payload.get("data") or {}

    async def list_backups(self) -> list[SupervisorBackup]:
        data = await self._request("GET", "/backups")
        return [SupervisorBackup(**b) for b in data.get("backups", [])]

    async def find_backup(self, slug: str) -> Optional[SupervisorBackup]:
        for backup in await self.list_backups():
            if backup.slug == slug:
                return backup
        return None

    async def create_full_backup(self) -> str:
        """Start a full backup in background mode.

        Returns:
            Supervisor job id to poll
        """
        name = f"disk-swap-clone-{date.today().isoformat()}"
        self.logger.info(f"Creating full backup {name}")
        data = await self._request(
            "POST",
            "/backups/new/full",
            {"name": name, "background": True, "homeassistant_exclude_database": False},
        )
        job_id = data.get("job_id")
        if not job_id:
            raise SupervisorError("Backup request returned no job id")
        return job_id

    async def poll_job(self, job_id: str) -> SupervisorJobStatus:
        data = await self._request("GET", f"/jobs/{job_id}")
        return SupervisorJobStatus(**data)

    async def get_info(self) -> SupervisorInfo:
        return SupervisorInfo(**await self._request("GET", "/info"))

    async def get_os_info(self) -> OsInfo:
        return OsInfo(**await self._request("GET", "/os/info"))

    async def get_host_info(self) -> HostInfo:
        return HostInfo(**await self._request("GET", "/host/info"))

    async def get_network_info(self) -> dict:
        return await self._request("GET", "/network/info")

    async def get_addon_info(self) -> AddonInfo:
        return AddonInfo(**await self._request("GET", "/addons/self/info"))

    async def get_system_info(self) -> SystemInfo:
        info, os_info, host_info, network_info, addon_info = await asyncio.gather(
            self.get_info(),
            self.get_os_info(),
            self.get_host_info(),
            self.get_network_info(),
            self.get_addon_info(),
        )
        free_bytes = round(host_info.disk_free * GB)
        return SystemInfo(
            machine=info.machine,
            board_slug=machine_to_board_slug(info.machine),
            os_version=os_info.version,
            os_version_latest=os_info.version_latest,
            ip_address=extract_ip_address(network_info),
            free_space_bytes=free_bytes,
            free_space_human=format_bytes(free_bytes),
            protected=addon_info.protected,
            addon_slug=addon_info.slug,
        )


def extract_ip_address(network_info: dict) -> str:
    """First IPv4 address of a non-loopback interface, without CIDR suffix."""
    for iface in network_info.get("interfaces", []):
        if iface.get("interface") == "lo":
            continue
        addresses = (iface.get("ipv4") or {}).get("address") or []
        if addresses:
            return addresses[0].split("/")[0]
    return "unknown"
