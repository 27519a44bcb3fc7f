#!/usr/bin/env python3
"""
Helpers shared by the API client and the cycle strategies: request pacing,
retry backoff, all-or-nothing concurrent fan-out and log formatting.
"""

from asyncio import Lock, ensure_future, gather, sleep
from time import monotonic
from typing import Awaitable, Iterable, List, Optional, TypeVar

from config import get_logger

# Module-specific logger
logger = get_logger("utils")

T = TypeVar("T")


class RateLimiter:
    """Spaces requests evenly so that at most ``requests_per_minute`` go out per minute.

    One limiter is shared by every scraper using the same API client, so the
    budget applies to the process as a whole. ``requests_per_minute <= 0``
    disables pacing.
    """

    def __init__(self, requests_per_minute: int):
        self.requests_per_minute = requests_per_minute
        self.min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0.0
        self._next_slot = 0.0
        self._lock = Lock()

    async def acquire(self) -> None:
        """Wait until the next request slot is available."""
        if self.min_interval <= 0:
            return
        async with self._lock:
            wait_time = self._next_slot - monotonic()
            if wait_time > 0:
                logger.debug(f"Rate limiting: waiting {wait_time:.2f}s for the next request slot")
                await sleep(wait_time)
            self._next_slot = monotonic() + self.min_interval


class RetryHelper:
    """Exponential backoff: ``base_delay * 2**attempt``, capped at ``max_delay``."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (``attempt`` is 0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    async def sleep_for_attempt(self, attempt: int) -> None:
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Backing off {delay:.2f}s before retry {attempt + 1}")
            await sleep(delay)


async def gather_all_or_nothing(aws: Iterable[Awaitable[T]]) -> List[T]:
    """Run awaitables concurrently and return their results in input order.

    The first failure is re-raised after every sibling that is still running
    has been cancelled and reaped, so no partial result ever escapes.
    """
    tasks = [ensure_future(aw) for aw in aws]
    if not tasks:
        return []
    try:
        return list(await gather(*tasks))
    except BaseException:
        pending = [task for task in tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await gather(*pending, return_exceptions=True)
        raise


def format_duration(seconds: float) -> str:
    """Render a delay for log lines, e.g. ``1h 2m 5s``; negative values render as ``0s``."""
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    parts = [f"{value}{unit}" for value, unit in ((hours, "h"), (minutes, "m")) if value]
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def truncate_string(text: Optional[str], max_length: int, suffix: str = "...") -> Optional[str]:
    """Shorten ``text`` to ``max_length`` characters including ``suffix``."""
    if not text or len(text) <= max_length:
        return text
    if len(suffix) >= max_length:
        return text[:max_length]
    return text[:max_length - len(suffix)] + suffix
