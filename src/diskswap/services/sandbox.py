"""Ephemeral nested Home Assistant instance booted from the target disk.

The sandbox lets the user restore their backup interactively against a
real Supervisor + Core before the new disk ever boots. A nested dockerd
keeps its data root on the target's data partition, so every image pulled
here is already present on first boot.

Networking notes
----------------
* The nested dockerd runs with ``iptables: false``. Its own rule set would
  hijack traffic the host ingress proxy sends to this add-on; only the
  MASQUERADE/FORWARD rules needed for internet access are installed.
* The Supervisor image is pulled *before* the ``hassio`` network exists:
  that bridge installs a 172.30.32.0/23 route which overlaps the outer
  add-on network and breaks outbound traffic until it is rewritten.
* The nested Supervisor is pinned to 172.30.32.2, which is also the
  address of the outer Supervisor proxying ingress requests to us.
  Connections arriving on the real interface are connmarked, and replies
  carrying that mark are routed through a dedicated table back out of the
  real interface instead of into the nested bridge.

If anything fails the stage fails, but the disk stays usable through the
auto-restore descriptor written by the injector.
"""

import asyncio
import json
import logging
import platform
import time
import uuid
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import httpx

from diskswap import config
from diskswap.errors import SandboxError
from diskswap.services import block, process
from diskswap.utils.cancellation import CancelToken

# percent, description
ProgressCallback = Callable[[int, Optional[str]], None]

ARCH_MAP = {"aarch64": "aarch64", "x86_64": "amd64", "armv7l": "armv7"}

# Relative to the data partition; removed so every session starts at onboarding
STALE_STATE_FILES = (
    "supervisor/homeassistant/.HA_RESTART",
    "supervisor/homeassistant/.storage/onboarding",
)

WAIT_PROGRESS_START = 40
WAIT_PROGRESS_END = 88
READY_PROGRESS = 99


def supervisor_image(machine_arch: Optional[str] = None) -> str:
    raw = machine_arch or platform.machine()
    arch = ARCH_MAP.get(raw, raw)
    return f"ghcr.io/home-assistant/{arch}-hassio-supervisor:latest"


class NetworkRules:
    """Firewall and routing changes applied for the sandbox, undone in reverse."""

    def __init__(self):
        self.logger = logging.getLogger("diskswap.sandbox.network")
        self._undo: List[List[str]] = []

    @property
    def applied(self) -> List[List[str]]:
        return list(self._undo)

    async def apply(self, add: Sequence[str], delete: Sequence[str]) -> None:
        await process.run(add)
        self._undo.append(list(delete))

    async def iptables(self, table: str, chain: str, *rule: str, insert: bool = False) -> None:
        action = "-I" if insert else "-A"
        await self.apply(
            ["iptables", "-t", table, action, chain, *rule],
            ["iptables", "-t", table, "-D", chain, *rule],
        )

    async def ip(self, add: Sequence[str], delete: Sequence[str]) -> None:
        await self.apply(["ip", *add], ["ip", *delete])

    async def revert(self) -> None:
        """Remove every applied rule, newest first. Never raises."""
        while self._undo:
            argv = self._undo.pop()
            result = await process.run_quiet(argv)
            if not result.ok:
                self.logger.warning(f"Could not revert: {' '.join(argv)}")


class SandboxOrchestrator:
    """Runs one interactive sandbox session at a time."""

    def __init__(
        self,
        mount_point: Path = config.MOUNT_POINT,
        loop_device: str = config.LOOP_DEVICE,
        docker_socket: str = config.DIND_SOCKET,
        core_url: str = config.SANDBOX_CORE_URL,
        host_root: Path = Path("/"),
        dockerd_timeout: float = 30.0,
        ready_timeout: float = 15 * 60.0,
        poll_interval: float = 0.5,
        log_interval: float = 5.0,
        ready_interval: float = 5.0,
    ):
        self.logger = logging.getLogger("diskswap.sandbox")
        self.mount_point = Path(mount_point)
        self.loop_device = loop_device
        self.docker_socket = docker_socket
        self.core_url = core_url
        self.host_root = Path(host_root)
        self.daemon_config_path = config.DIND_CONFIG_FILE
        self.daemon_log_path = config.DIND_LOG_FILE
        self.dockerd_timeout = dockerd_timeout
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self.log_interval = log_interval
        self.ready_interval = ready_interval

        self._proxy_url: Optional[str] = None
        self._done: Optional[asyncio.Event] = None
        self._dockerd: Optional[asyncio.subprocess.Process] = None

    @property
    def proxy_url(self) -> Optional[str]:
        """Address of the running nested Core, or None when not ready."""
        return self._proxy_url

    def signal_done(self) -> bool:
        """User finished restoring. Only the first call per session has an effect."""
        if self._done is None or self._done.is_set():
            return False
        self.logger.info("User signalled sandbox completion")
        self._done.set()
        return True

    async def run(
        self,
        device_path: str,
        machine: str,
        on_progress: ProgressCallback,
        token: CancelToken,
    ) -> None:
        """Boot the sandbox on ``device_path`` and block until the user is done.

        Raises:
            SandboxError: A step before readiness failed
            CloneCancelledError: ``token`` fired (cleanup has already run)
        """
        self._proxy_url = None
        self._done = None
        rules = NetworkRules()

        try:
            on_progress(0, "Mounting data partition…")
            await block.settle(device_path)
            token.raise_if_cancelled()

            async with block.data_partition(
                device_path, self.mount_point, loop=self.loop_device, grow=True
            ) as mount:
                try:
                    await self._session(mount, machine, rules, on_progress, token)
                finally:
                    await self._teardown(rules)
        finally:
            self._proxy_url = None
            self._done = None
            # Namespace teardown of the nested dockerd can take securityfs with it
            await process.run_quiet(
                ["mount", "-t", "securityfs", "securityfs", "/sys/kernel/security"]
            )

        token.raise_if_cancelled()

    async def _session(
        self,
        mount: Path,
        machine: str,
        rules: NetworkRules,
        on_progress: ProgressCallback,
        token: CancelToken,
    ) -> None:
        on_progress(5, "Configuring sandbox environment…")
        self.write_daemon_config(mount)
        self.prepare_host_paths(mount)
        token.raise_if_cancelled()

        on_progress(10, "Starting sandbox Docker daemon…")
        self._dockerd = await self.start_dockerd()
        await self.wait_for_dockerd(token)
        self.logger.info("Nested dockerd ready")

        on_progress(15, "Configuring sandbox network…")
        await self.install_nat(rules)
        token.raise_if_cancelled()

        image = supervisor_image()
        on_progress(20, "Pulling Supervisor image…")
        await self._docker("pull", image, token=token)
        self.logger.info(f"Pulled {image}")

        on_progress(30, "Setting up Home Assistant network…")
        await self.create_network(rules, token)
        token.raise_if_cancelled()

        on_progress(35, "Starting Supervisor…")
        await self.start_supervisor(mount, machine, image, token)

        on_progress(WAIT_PROGRESS_START, "Waiting for Home Assistant to start (this may take a few minutes)…")
        await self.wait_for_core(on_progress, token)
        self.logger.info(f"Nested Core ready at {self.core_url}")

        self._proxy_url = self.core_url
        on_progress(READY_PROGRESS, config.SANDBOX_READY_SENTINEL)
        await self.wait_for_user(on_progress, token)
        self._proxy_url = None
        if not token.cancelled:
            on_progress(READY_PROGRESS, "Shutting down sandbox…")

    # -- Environment ---------------------------------------------------

    def daemon_config(self, mount: Path) -> dict:
        return {
            "data-root": str(mount / "docker"),
            "hosts": [f"unix://{self.docker_socket}"],
            "exec-root": config.DIND_EXEC_ROOT,
            "pidfile": config.DIND_PIDFILE,
            "bip": config.DIND_BRIDGE_IP,
            "storage-driver": "overlay2",
            "iptables": False,
            "ip-forward": True,
            "userland-proxy": False,
            "dns": ["8.8.8.8", "8.8.4.4"],
            "log-level": "info",
        }

    def write_daemon_config(self, mount: Path) -> Path:
        path = Path(self.daemon_config_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.daemon_config(mount), indent=2), encoding="utf-8")
        return path

    def prepare_host_paths(self, mount: Path) -> None:
        """Create what the nested Supervisor's plugins expect on the host."""
        root = self.host_root
        for directory in ("run/dbus", "dev/snd"):
            try:
                (root / directory).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                self.logger.warning(f"Cannot create /{directory}: {e}")

        # The observer plugin bind-mounts /run/docker.sock
        docker_sock = root / "run/docker.sock"
        if not docker_sock.exists() and not docker_sock.is_symlink():
            try:
                docker_sock.symlink_to(self.docker_socket)
            except OSError as e:
                self.logger.warning(f"Cannot link /run/docker.sock: {e}")

        machine_id = root / "etc/machine-id"
        if not machine_id.exists() or not machine_id.read_text().strip():
            machine_id.parent.mkdir(parents=True, exist_ok=True)
            machine_id.write_text(uuid.uuid4().hex + "\n")

        for relative in STALE_STATE_FILES:
            stale = mount / relative
            if stale.exists():
                self.logger.info(f"Removing stale {relative}")
                stale.unlink()

    # -- Nested dockerd ------------------------------------------------

    def dockerd_command(self) -> List[str]:
        # /proc/sys and the cgroup tree are remounted rw only inside the new
        # mount namespace; dockerd needs them for bridge sysctls.
        script = (
            "mount -o remount,rw /proc/sys && "
            "mount -o remount,rw /sys/fs/cgroup && "
            f"exec dockerd --config-file {self.daemon_config_path}"
        )
        return ["unshare", "--mount", "--propagation", "private", "/bin/sh", "-c", script]

    async def start_dockerd(self) -> asyncio.subprocess.Process:
        Path(self.docker_socket).unlink(missing_ok=True)
        argv = self.dockerd_command()
        self.logger.info(f"CMD {process.format_argv(argv)}")
        with open(self.daemon_log_path, "wb") as log:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )

    def _daemon_log_tail(self, lines: int = 5) -> str:
        try:
            text = Path(self.daemon_log_path).read_text(errors="replace")
        except OSError:
            return ""
        return " | ".join(text.strip().splitlines()[-lines:])

    async def wait_for_dockerd(self, token: CancelToken) -> None:
        deadline = time.monotonic() + self.dockerd_timeout
        while time.monotonic() < deadline:
            if self._dockerd is not None and self._dockerd.returncode is not None:
                raise SandboxError(
                    f"Nested dockerd exited with code {self._dockerd.returncode}: "
                    f"{self._daemon_log_tail()}"
                )
            result = await self._docker_quiet("version")
            if result.ok:
                return
            await token.sleep(self.poll_interval)
        raise SandboxError(
            f"dockerd socket {self.docker_socket} not ready after {self.dockerd_timeout:.0f}s"
        )

    async def _docker(self, *args: str, token: Optional[CancelToken] = None) -> process.CommandResult:
        return await process.run(["docker", "-H", f"unix://{self.docker_socket}", *args], token=token)

    async def _docker_quiet(self, *args: str, timeout: float = 60.0) -> process.CommandResult:
        return await process.run_quiet(
            ["docker", "-H", f"unix://{self.docker_socket}", *args], timeout=timeout
        )

    # -- Networking ----------------------------------------------------

    async def host_interface(self) -> str:
        """Interface carrying the default route (the add-on's real NIC)."""
        result = await process.run_quiet(["ip", "-o", "route", "show", "default"])
        fields = result.stdout.split()
        if "dev" in fields:
            index = fields.index("dev")
            if index + 1 < len(fields):
                return fields[index + 1]
        return "eth0"

    async def install_nat(self, rules: NetworkRules) -> None:
        """Let nested containers reach the internet, nothing more."""
        for subnet, bridge in (
            (config.DIND_BRIDGE_SUBNET, "docker0"),
            (config.SANDBOX_SUBNET, config.SANDBOX_NETWORK),
        ):
            await rules.iptables("nat", "POSTROUTING", "-s", subnet, "!", "-o", bridge, "-j", "MASQUERADE")
            await rules.iptables("filter", "FORWARD", "-i", bridge, "-j", "ACCEPT", insert=True)
            await rules.iptables(
                "filter", "FORWARD", "-o", bridge,
                "-m", "conntrack", "--ctstate", "RELATED,ESTABLISHED",
                "-j", "ACCEPT",
                insert=True,
            )

    async def create_network(self, rules: NetworkRules, token: CancelToken) -> None:
        """Create the Supervisor's bridge and replace its route with policy routing."""
        net = config.SANDBOX_NETWORK
        existing = await self._docker_quiet("network", "inspect", net)
        if not existing.ok:
            await self._docker(
                "network", "create",
                "--driver", "bridge",
                "--subnet", config.SANDBOX_SUBNET,
                "--gateway", config.SANDBOX_GATEWAY,
                "--opt", f"com.docker.network.bridge.name={net}",
                net,
                token=token,
            )

        iface = await self.host_interface()
        table = config.SANDBOX_ROUTE_TABLE
        mark = config.SANDBOX_FWMARK

        await process.run_quiet(["ip", "route", "del", config.SANDBOX_SUBNET, "dev", net])
        await rules.ip(
            ["route", "add", config.SANDBOX_INNER_SUBNET, "dev", net, "src", config.SANDBOX_GATEWAY],
            ["route", "del", config.SANDBOX_INNER_SUBNET, "dev", net],
        )
        # Keep the default gateway reachable through the real interface
        await rules.ip(
            ["route", "add", config.SANDBOX_OUTER_GATEWAY, "dev", iface],
            ["route", "del", config.SANDBOX_OUTER_GATEWAY, "dev", iface],
        )
        await rules.ip(
            ["route", "add", config.SANDBOX_SUBNET, "dev", iface, "table", table],
            ["route", "del", config.SANDBOX_SUBNET, "dev", iface, "table", table],
        )
        await rules.ip(
            ["rule", "add", "fwmark", mark, "table", table],
            ["rule", "del", "fwmark", mark, "table", table],
        )
        await rules.iptables("mangle", "PREROUTING", "-i", iface, "-j", "CONNMARK", "--set-mark", mark)
        await rules.iptables(
            "mangle", "OUTPUT", "-m", "connmark", "--mark", mark, "-j", "CONNMARK", "--restore-mark"
        )
        self.logger.info(f"Sandbox network ready (host interface {iface})")

    # -- Supervisor and Core -------------------------------------------

    async def start_supervisor(self, mount: Path, machine: str, image: str, token: CancelToken) -> None:
        supervisor_data = mount / "supervisor"
        supervisor_data.mkdir(parents=True, exist_ok=True)
        name = config.SUPERVISOR_CONTAINER

        await self._docker_quiet("rm", "-f", name)
        await self._docker(
            "run", "-d", "--rm",
            "--name", name,
            "--network", config.SANDBOX_NETWORK,
            "--ip", config.SANDBOX_SUPERVISOR_IP,
            "--privileged",
            "--security-opt", "apparmor=unconfined",
            "--security-opt", "seccomp=unconfined",
            "-e", f"SUPERVISOR_SHARE={supervisor_data}",
            "-e", f"SUPERVISOR_NAME={name}",
            "-e", f"SUPERVISOR_MACHINE={machine}",
            "-v", f"{self.docker_socket}:/run/docker.sock:rw",
            "-v", "/run/dbus:/run/dbus:ro",
            "-v", f"{supervisor_data}:/data:rw",
            "-v", "/etc/machine-id:/etc/machine-id:ro",
            image,
            token=token,
        )
        self.logger.info("Supervisor container started")

    async def wait_for_core(self, on_progress: ProgressCallback, token: CancelToken) -> None:
        sampler = asyncio.create_task(self._sample_supervisor_log(on_progress, token))
        try:
            await self.wait_for_http(self.core_url, self.ready_timeout, token)
        finally:
            sampler.cancel()
            try:
                await sampler
            except asyncio.CancelledError:
                pass

    async def wait_for_http(self, url: str, timeout: float, token: CancelToken) -> None:
        """Poll ``url`` until it answers with any non-5xx status."""
        deadline = time.monotonic() + timeout
        async with httpx.AsyncClient(timeout=3.0) as client:
            while time.monotonic() < deadline:
                try:
                    response = await client.get(url)
                    if response.status_code < 500:
                        return
                except httpx.HTTPError:
                    pass
                await token.sleep(self.poll_interval)
        raise SandboxError(f"Home Assistant at {url} not ready after {timeout:.0f}s")

    async def _sample_supervisor_log(self, on_progress: ProgressCallback, token: CancelToken) -> None:
        # No structured progress exists while the Supervisor installs plugins
        # and Core: advance on time, but only when the log shows activity.
        start = time.monotonic()
        last_line = ""
        while not token.cancelled:
            await asyncio.sleep(self.log_interval)
            result = await self._docker_quiet("logs", "--tail", "3", config.SUPERVISOR_CONTAINER)
            lines = (result.stdout + result.stderr).strip().splitlines()
            line = lines[-1] if lines else ""
            if line and line != last_line:
                last_line = line
                fraction = min((time.monotonic() - start) / self.ready_timeout, 1.0)
                percent = round(WAIT_PROGRESS_START + fraction * (WAIT_PROGRESS_END - WAIT_PROGRESS_START))
                on_progress(percent, "Waiting for Home Assistant to start…")

    async def wait_for_user(self, on_progress: ProgressCallback, token: CancelToken) -> None:
        """Block until :meth:`signal_done` or cancellation.

        The ready sentinel is re-sent periodically so observers that connect
        late (page refresh) still see the sandbox as ready. The done signal
        is only armed here; calls made while the sandbox boots are ignored.
        """
        self._done = asyncio.Event()
        done = self._done

        async def heartbeat() -> None:
            while True:
                await asyncio.sleep(self.ready_interval)
                on_progress(READY_PROGRESS, config.SANDBOX_READY_SENTINEL)

        tasks = [
            asyncio.create_task(heartbeat()),
            asyncio.create_task(done.wait()),
            asyncio.create_task(token.wait()),
        ]
        try:
            await asyncio.wait(tasks[1:], return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- Teardown ------------------------------------------------------

    async def _teardown(self, rules: NetworkRules) -> None:
        """Stop containers and dockerd, then remove network rules. Never raises."""
        self._proxy_url = None
        if self._dockerd is not None:
            await self._docker_quiet("stop", "-t", "30", config.SUPERVISOR_CONTAINER, timeout=60.0)
            # Stop Core and plugins too so their databases are flushed to disk
            running = await self._docker_quiet("ps", "-q")
            ids = running.stdout.split()
            if ids:
                await self._docker_quiet("stop", "-t", "30", *ids, timeout=120.0)
            await process.terminate(self._dockerd, grace=15.0)
            self._dockerd = None

        await rules.revert()
        Path(self.docker_socket).unlink(missing_ok=True)
        Path(self.daemon_config_path).unlink(missing_ok=True)
        self.logger.info("Sandbox torn down")
