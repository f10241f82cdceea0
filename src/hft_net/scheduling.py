"""
Repeating-callback schedulers.

The game cache sweeps itself on a fixed interval through one of these, so
tests can substitute a scheduler they drive by hand.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Runs ``callback`` every ``interval`` seconds until cancelled."""

    def call_every(self, interval: float, callback: Callable[[], None]) -> Cancellable: ...


class _LoopTimer:
    """Re-arms ``loop.call_later`` after every run."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        interval: float,
        callback: Callable[[], None],
    ):
        self._loop = loop
        self._interval = interval
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._cancelled = False
        self._arm()

    def _arm(self) -> None:
        self._handle = self._loop.call_later(self._interval, self._run)

    def _run(self) -> None:
        if self._cancelled:
            return
        try:
            self._callback()
        except Exception as e:
            logger.error(f"Scheduled callback failed: {e}")
        if not self._cancelled:
            self._arm()

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle:
            self._handle.cancel()
            self._handle = None


class LoopScheduler:
    """Schedules callbacks on an asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def call_every(self, interval: float, callback: Callable[[], None]) -> _LoopTimer:
        loop = self._loop or asyncio.get_running_loop()
        return _LoopTimer(loop, interval, callback)


class _ThreadTimer:
    """Daemon thread that runs a callback until its stop event is set."""

    def __init__(self, interval: float, callback: Callable[[], None]):
        self._interval = interval
        self._callback = callback
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._callback()
            except Exception as e:
                logger.error(f"Scheduled callback failed: {e}")

    def cancel(self) -> None:
        self._stop.set()


class ThreadScheduler:
    """Schedules callbacks on background daemon threads."""

    def call_every(self, interval: float, callback: Callable[[], None]) -> _ThreadTimer:
        return _ThreadTimer(interval, callback)
