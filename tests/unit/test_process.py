"""Unit tests for the async process runner."""

import signal
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from diskswap.errors import CloneCancelledError, CommandError
from diskswap.services import process
from diskswap.utils.cancellation import CancelToken


def _mock_process(stdout=b"", stderr=b"", returncode=0, pid=4242):
    proc = MagicMock()
    proc.pid = pid
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout, stderr))
    proc.wait = AsyncMock(return_value=returncode)
    return proc


@pytest.mark.unit
class TestRun:
    """Test process.run in isolation."""

    @pytest.mark.asyncio
    async def test_run_success(self):
        proc = _mock_process(stdout=b"hassos-data\n")

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as mock_exec:
            result = await process.run(["lsblk", "-no", "LABEL", "/dev/sdb8"])

        assert result.ok
        assert result.stdout == "hassos-data\n"
        args, kwargs = mock_exec.call_args
        assert args == ("lsblk", "-no", "LABEL", "/dev/sdb8")
        assert kwargs["start_new_session"] is True

    @pytest.mark.asyncio
    async def test_run_nonzero_raises_command_error(self):
        proc = _mock_process(stderr=b"mount: wrong fs type\n", returncode=32)

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            with pytest.raises(CommandError) as exc_info:
                await process.run(["mount", "/dev/loop0", "/mnt/newsd"])

        assert exc_info.value.returncode == 32
        assert "wrong fs type" in exc_info.value.stderr

    @pytest.mark.asyncio
    async def test_run_nonzero_without_check(self):
        proc = _mock_process(returncode=1)

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            result = await process.run(["e2fsck", "-fy", "/dev/loop0"], check=False)

        assert result.returncode == 1
        assert not result.ok

    @pytest.mark.asyncio
    async def test_run_refuses_when_already_cancelled(self):
        token = CancelToken()
        token.cancel()

        with patch("asyncio.create_subprocess_exec", AsyncMock()) as mock_exec:
            with pytest.raises(CloneCancelledError):
                await process.run(["true"], token=token)

        mock_exec.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_during_run_kills_group(self):
        """Firing the token while the command runs kills its process group."""
        token = CancelToken()
        proc = _mock_process(returncode=None)

        async def communicate(input=None):
            token.cancel()
            proc.returncode = -15
            return b"", b""

        proc.communicate = communicate

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)), \
             patch("os.killpg") as mock_killpg:
            with pytest.raises(CloneCancelledError):
                await process.run(["dd", "if=/dev/zero", "of=/dev/sdb"], token=token)

        mock_killpg.assert_called_once_with(4242, signal.SIGTERM)

    @pytest.mark.asyncio
    async def test_run_quiet_never_raises(self):
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError("udevadm"))):
            result = await process.run_quiet(["udevadm", "settle"])

        assert result.returncode == -1
        assert "udevadm" in result.stderr


@pytest.mark.unit
class TestKillGroup:
    """Test process group signalling."""

    def test_skips_finished_process(self):
        proc = _mock_process(returncode=0)
        with patch("os.killpg") as mock_killpg:
            process.kill_group(proc)
        mock_killpg.assert_not_called()

    def test_ignores_vanished_group(self):
        proc = _mock_process(returncode=None)
        with patch("os.killpg", side_effect=ProcessLookupError):
            process.kill_group(proc, signal.SIGKILL)

    @pytest.mark.asyncio
    async def test_terminate_escalates_to_sigkill(self):
        proc = _mock_process(returncode=None)
        waits = iter([TimeoutError, 0])

        async def wait_for(coro, timeout):
            coro.close()
            outcome = next(waits)
            if outcome is TimeoutError:
                raise process.asyncio.TimeoutError()
            return outcome

        with patch("os.killpg") as mock_killpg, \
             patch.object(process.asyncio, "wait_for", wait_for):
            await process.terminate(proc, grace=0.1)

        sent = [c.args[1] for c in mock_killpg.call_args_list]
        assert sent == [signal.SIGTERM, signal.SIGKILL]
