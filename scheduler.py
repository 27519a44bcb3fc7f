#!/usr/bin/env python3
"""
Per-instance cycle timer.

Every scraper owns exactly one CycleTimer. Arming the timer registers a single
``loop.call_later`` callback; when it fires, the cycle coroutine runs as its own
task. Cancelling only affects a timer that has not fired yet, so a cycle that is
already running always completes.

Tests replace the timer with any object exposing the same ``pending``,
``schedule(delay, callback)`` and ``cancel()`` members.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Set

from config import get_logger

# Module-specific logger
logger = get_logger("scheduler")

CycleCallback = Callable[[], Awaitable[object]]


class CycleTimer:
    """One-shot cancellable timer bound to the running asyncio loop."""

    def __init__(self, name: str = "cycle"):
        self.name = name
        self._handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        """True while an armed timer has not fired yet."""
        return self._handle is not None

    def schedule(self, delay: float, callback: CycleCallback) -> None:
        """Arm the timer to run ``callback`` after ``delay`` seconds.

        Raises:
            RuntimeError: If the timer is already armed; one cycle per instance.
        """
        if self._handle is not None:
            raise RuntimeError(f"{self.name}: timer already pending")
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(max(0.0, delay), self._fire, callback)
        logger.debug(f"{self.name}: next cycle in {delay:.1f}s")

    def cancel(self) -> bool:
        """Disarm a pending timer. Returns True if a pending cycle was prevented."""
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        logger.debug(f"{self.name}: pending cycle cancelled")
        return True

    def _fire(self, callback: CycleCallback) -> None:
        self._handle = None
        task = asyncio.ensure_future(callback())
        # Keep a strong reference until the cycle finishes
        self._tasks.add(task)
        task.add_done_callback(self._reap)

    def _reap(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"{self.name}: cycle task crashed: {exc!r}", exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait for any cycle task started by this timer to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
