"""Raw image writer: xz -dc | pv | dd straight onto the target disk."""

import asyncio
import logging
import shlex
from collections import deque
from pathlib import Path
from typing import Callable, Optional

from diskswap.errors import CloneCancelledError, CommandError, FlashError
from diskswap.services import process
from diskswap.utils.cancellation import CancelToken
from diskswap.utils.progress import ThroughputMeter

ProgressCallback = Callable[[int, Optional[float], Optional[float]], None]


class Flasher:
    """Writes a compressed OS image bit-for-bit to a block device."""

    def __init__(self, reprobe_delay: float = 2.0, settle_delay: float = 1.0):
        self.logger = logging.getLogger("diskswap.flasher")
        self.reprobe_delay = reprobe_delay
        self.settle_delay = settle_delay
        self.diagnostic_lines = 20

    async def uncompressed_size(self, image_path: Path) -> int:
        """Decompressed byte count read from the xz index.

        ``xz --robot --list`` ends with a ``totals`` line whose fifth
        column is the uncompressed size.
        """
        result = await process.run(["xz", "--robot", "--list", str(image_path)])
        lines = [l for l in result.stdout.strip().splitlines() if l.strip()]
        totals = next((l for l in reversed(lines) if l.startswith("totals")), None)
        if totals is None:
            raise FlashError(f"Cannot read uncompressed size of {image_path}")
        fields = totals.split("\t")
        try:
            return int(fields[4])
        except (IndexError, ValueError) as e:
            raise FlashError(f"Unexpected xz --list output: {totals}") from e

    def build_pipeline(self, image_path: Path, device_path: str, total: int) -> str:
        return (
            f"xz -dc {shlex.quote(str(image_path))}"
            f" | pv --numeric --interval 1 --size {total}"
            f" | dd of={shlex.quote(device_path)} bs=4M iflag=fullblock"
            f" oflag=direct conv=fsync status=none"
        )

    def pipeline_argv(self, command: str) -> list:
        # pipefail: a failing xz must fail the pipeline, not only dd
        return ["bash", "-o", "pipefail", "-c", command]

    async def flash(
        self,
        image_path: Path,
        device_path: str,
        on_progress: ProgressCallback,
        token: Optional[CancelToken] = None,
    ) -> None:
        """Write ``image_path`` onto ``device_path``.

        The whole pipeline runs in one new process group so cancellation
        stops decompression and writing together. pv only reports percent,
        so speed and ETA are derived from percent deltas over time.

        Raises:
            FlashError: Pipeline exited non-zero, wrote errors to stderr, or
                stopped before 100% (includes captured stderr)
            CloneCancelledError: ``token`` fired; exit status is ignored
        """
        total = await self.uncompressed_size(image_path)
        command = self.build_pipeline(image_path, device_path, total)
        self.logger.info(f"Flashing {image_path} ({total} bytes) to {device_path}")
        argv = self.pipeline_argv(command)
        self.logger.info(f"CMD {process.format_argv(argv)}")

        if token is not None:
            token.raise_if_cancelled()

        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        remove = token.add_callback(lambda: process.kill_group(proc)) if token is not None else None

        meter = ThroughputMeter(total)
        diagnostics: deque = deque(maxlen=self.diagnostic_lines)
        last_percent = 0
        try:
            async for raw in proc.stderr:
                line = raw.decode(errors="replace").strip()
                if not line:
                    continue
                try:
                    percent = min(100, round(float(line)))
                except ValueError:
                    diagnostics.append(line)
                    continue
                last_percent = percent
                meter.update(total * percent // 100)
                on_progress(percent, meter.speed or None, meter.eta)
            returncode = await proc.wait()
        finally:
            if remove is not None:
                remove()
            if proc.returncode is None:
                await process.terminate(proc, grace=5.0)

        if token is not None and token.cancelled:
            self.logger.info("Flash cancelled, pipeline terminated")
            raise CloneCancelledError()
        detail = "; ".join(diagnostics)
        if returncode != 0:
            raise FlashError(
                f"Flash pipeline exited with code {returncode}"
                + (f": {detail}" if detail else "")
            )
        if diagnostics:
            raise FlashError(f"Flash pipeline reported errors: {detail}")
        if last_percent < 100:
            raise FlashError(
                f"Image stream ended at {last_percent}% of {total} bytes, "
                f"the image file is probably truncated"
            )
        self.logger.info(f"Flash of {device_path} complete")

    async def reprobe_partitions(self, device_path: str) -> None:
        """Re-read the partition table after a raw write.

        The kernel's partition view is stale right after dd; partprobe can
        fail while udev still holds the device, so it is retried once.
        """
        try:
            await process.run(["partprobe", device_path])
        except CommandError as e:
            self.logger.warning(f"partprobe failed ({e}), retrying in {self.reprobe_delay}s")
            await asyncio.sleep(self.reprobe_delay)
            await process.run(["partprobe", device_path])
        await process.run_quiet(["udevadm", "settle", "--timeout=5"])
        await asyncio.sleep(self.settle_delay)
