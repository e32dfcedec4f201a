"""Async child-process management.

Every command is started in its own session so it leads a fresh process
group. Cancelling a job kills the whole group, not just the immediate
child: ``sh -c "a | b | c"`` pipelines would otherwise keep writing after
the shell is gone.
"""

import asyncio
import logging
import os
import shlex
import signal
from dataclasses import dataclass
from typing import Optional, Sequence

from diskswap.errors import CloneCancelledError, CommandError
from diskswap.utils.cancellation import CancelToken

logger = logging.getLogger("diskswap.process")


@dataclass(frozen=True)
class CommandResult:
    argv: list
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def format_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(a)) for a in argv)


def kill_group(proc: asyncio.subprocess.Process, sig: int = signal.SIGTERM) -> None:
    """Send ``sig`` to the process group led by ``proc``. Never raises."""
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError as e:
        logger.warning(f"Cannot signal process group {proc.pid}: {e}")


async def terminate(proc: asyncio.subprocess.Process, grace: float = 10.0) -> None:
    """SIGTERM the process group, wait up to ``grace`` seconds, then SIGKILL."""
    if proc.returncode is not None:
        return
    kill_group(proc, signal.SIGTERM)
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace)
        return
    except asyncio.TimeoutError:
        logger.warning(f"Process {proc.pid} ignored SIGTERM for {grace}s, killing")
    kill_group(proc, signal.SIGKILL)
    try:
        await asyncio.wait_for(proc.wait(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.error(f"Process {proc.pid} did not exit after SIGKILL")


async def run(
    argv: Sequence[str],
    *,
    check: bool = True,
    token: Optional[CancelToken] = None,
    timeout: Optional[float] = None,
) -> CommandResult:
    """Run a command to completion with consistent logging.

    Args:
        argv: Program and arguments
        check: Raise CommandError on non-zero exit
        token: Cancellation token; firing it kills the process group
        timeout: Seconds before the process group is killed

    Returns:
        CommandResult with decoded stdout/stderr

    Raises:
        CommandError: If ``check`` and the command exits non-zero (or times out)
        CloneCancelledError: If ``token`` fired while the command ran
        FileNotFoundError: If the program does not exist
    """
    argv_list = [str(a) for a in argv]
    logger.info(f"CMD {format_argv(argv_list)}")

    if token is not None:
        token.raise_if_cancelled()

    proc = await asyncio.create_subprocess_exec(
        *argv_list,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
    remove = token.add_callback(lambda: kill_group(proc)) if token is not None else None
    try:
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await terminate(proc, grace=2.0)
            if check:
                raise CommandError(argv_list, -1, f"timed out after {timeout}s")
            return CommandResult(argv_list, -1, "", f"timed out after {timeout}s")
    finally:
        if remove is not None:
            remove()

    result = CommandResult(
        argv=argv_list,
        returncode=proc.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )
    if result.stderr.strip():
        logger.debug(f"STDERR {result.stderr.strip()}")

    if token is not None and token.cancelled:
        raise CloneCancelledError()
    if check and result.returncode != 0:
        raise CommandError(argv_list, result.returncode, result.stderr)
    return result


async def run_quiet(argv: Sequence[str], timeout: Optional[float] = 60.0) -> CommandResult:
    """Run a teardown/probe command: never raises, failures are only logged."""
    try:
        return await run(argv, check=False, timeout=timeout)
    except (OSError, CommandError) as e:
        logger.debug(f"Ignored failure of {format_argv(argv)}: {e}")
        return CommandResult([str(a) for a in argv], -1, "", str(e))
