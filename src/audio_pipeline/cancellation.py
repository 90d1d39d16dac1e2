"""Cooperative cancellation shared by every stage of one job."""

import asyncio
import threading
from typing import Optional

from .errors import Cancelled


class CancellationToken:
    """
    Write-once cancellation flag.

    ``request_cancellation`` may be called any number of times, from any
    coroutine or from another thread; only the first call records a reason.
    ``is_requested`` is a plain attribute read and never blocks.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._requested = False
        self._reason: Optional[str] = None
        self._event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def is_requested(self) -> bool:
        return self._requested

    def request_cancellation(self, reason: Optional[str] = None) -> None:
        """Flip the flag to requested. Later calls are no-ops."""
        with self._lock:
            if self._requested:
                return
            self._requested = True
            self._reason = reason
            loop = self._loop

        if loop is not None and loop.is_running():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not loop:
                loop.call_soon_threadsafe(self._event.set)
                return
        self._event.set()

    async def wait(self) -> None:
        """Suspend until cancellation is requested."""
        self._loop = asyncio.get_running_loop()
        if self._requested:
            return
        await self._event.wait()

    def raise_if_requested(self, operation: str) -> None:
        """Raise :class:`Cancelled` for ``operation`` if the flag is set."""
        if self._requested:
            raise Cancelled(operation, self._reason)
