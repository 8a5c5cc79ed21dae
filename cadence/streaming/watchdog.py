"""Inactivity watchdog for upstream streams."""

import asyncio
import time

from ..utils.logging import get_logger
from .types import StreamTimeout

logger = get_logger(__name__)


class InactivityWatchdog:
    """
    Flags a stream that has gone quiet for too long.

    The timer only sets a flag; it never interrupts the consumer. The
    consumer calls ``check()`` at loop boundaries, so detection latency is
    at most one fragment interval.
    """

    def __init__(self, timeout: float, label: str = "") -> None:
        self.timeout = timeout
        self.label = label
        self._handle: asyncio.TimerHandle | None = None
        self._fired = False
        self.last_activity = time.monotonic()

    @property
    def fired(self) -> bool:
        return self._fired

    def start(self) -> None:
        self.reset()

    def reset(self) -> None:
        """Record activity and restart the countdown."""
        self.last_activity = time.monotonic()
        self._cancel_handle()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout, self._fire)

    def cancel(self) -> None:
        self._cancel_handle()

    def check(self) -> None:
        """Raise StreamTimeout if the watchdog has fired."""
        if self._fired:
            raise StreamTimeout(self.timeout)

    def _fire(self) -> None:
        self._handle = None
        self._fired = True
        logger.warning("Stream inactive, timing out", target=self.label, timeout_s=self.timeout)

    def _cancel_handle(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
