"""Cooperative cancellation shared by every stage of a clone job."""

import asyncio
import logging
from typing import Callable, List

from diskswap.errors import CloneCancelledError


class CancelToken:
    """One token per job, passed into every stage and child process.

    Callbacks registered with :meth:`add_callback` run synchronously when
    the token fires; the process runner uses them to kill whole process
    groups.
    """

    def __init__(self):
        self.logger = logging.getLogger("diskswap.cancellation")
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                self.logger.warning(f"Cancel callback failed: {e}")

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback`` to run on cancel.

        Returns:
            A function that unregisters the callback. If the token is
            already cancelled the callback runs immediately.
        """
        if self._event.is_set():
            callback()
            return lambda: None

        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CloneCancelledError()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds``, raising CloneCancelledError on cancel."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise CloneCancelledError()
