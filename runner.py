#!/usr/bin/env python3
"""
Shared cycle engine for the polling scraper and the item enricher.

One CycleRunner belongs to one identity+location pair. A cycle is:

1. authorize: reuse the current session unless it expires within 5 seconds
2. fetch: delegate to the injected strategy with the session token
3. publish: hand the batch to every subscriber, isolating their failures

Rescheduling is left to the owner (PollingScraper, ItemEnricher), which arms
the runner's timer through ``schedule()`` so that ``stop()`` is honoured at
every decision point.
"""

from __future__ import annotations

import asyncio
import inspect
from time import time
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence, Set, Union

from config import get_logger
from entities import (
    CycleOutcome,
    Item,
    Location,
    PollConfig,
    ScraperContext,
    ScraperState,
    Session,
    validate_identity,
)
from errors import AuthError, FetchError, PublishError
from scheduler import CycleTimer
from telemetry import trace_span
from utils import RetryHelper

# Module-specific logger
logger = get_logger("runner")

# A session is refreshed when it expires within this many seconds
TOKEN_REFRESH_MARGIN_SECONDS = 5

Subscriber = Callable[[List[Item], ScraperContext], Union[None, Awaitable[None]]]


class AuthProvider(Protocol):
    async def request_session(self, identity: str, location: Location) -> Session: ...


class FetchStrategy(Protocol):
    async def fetch(self, token: str) -> List[Item]: ...


class CycleRunner:
    """Authorize, fetch through a strategy, and publish to subscribers."""

    def __init__(
        self,
        identity: str,
        location: Location,
        config: Optional[PollConfig] = None,
        *,
        auth: AuthProvider,
        timer=None,
        clock: Callable[[], float] = time,
        description: Optional[str] = None,
    ):
        self.identity = validate_identity(identity)
        self.location = location
        self.config = config or PollConfig()
        self.auth = auth
        self.clock = clock
        self.description = description or location.describe()
        self.timer = timer or CycleTimer(self.description)
        self.session: Optional[Session] = None
        self.state = ScraperState.IDLE
        self.consecutive_failures = 0
        self._subscribers: List[Subscriber] = []
        self._stop_requested = False
        self._publish_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------
    def subscribe(self, handler: Subscriber) -> None:
        """Register a sink; it receives batches starting with the next cycle."""
        self._subscribers.append(handler)

    def publish(self, batch: List[Item], context: ScraperContext, handlers: Sequence[Subscriber]) -> int:
        """Invoke handlers in order. Returns the number of handlers that failed synchronously."""
        failures = 0
        for handler in handlers:
            try:
                result = handler(batch, context)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._publish_tasks.add(task)
                    task.add_done_callback(lambda t, h=handler: self._reap_publish(t, h))
            except Exception as e:
                failures += 1
                logger.error(f"{self.description}: {PublishError(handler, e)}", exc_info=e)
        return failures

    def _reap_publish(self, task: asyncio.Task, handler: Subscriber) -> None:
        self._publish_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"{self.description}: {PublishError(handler, exc)}", exc_info=exc)

    async def drain_publishers(self) -> None:
        """Wait for fire-and-forget subscriber work started by earlier cycles."""
        while self._publish_tasks:
            await asyncio.gather(*list(self._publish_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------
    async def authorize(self) -> Session:
        """Return a usable session, requesting a new one when absent or about to expire.

        Raises:
            AuthError: If a new session was needed and could not be obtained.
        """
        if self.session is not None and not self.session.needs_refresh(self.clock(), TOKEN_REFRESH_MARGIN_SECONDS):
            return self.session
        logger.info(f"{self.description}: requesting new token")
        try:
            session = await self.auth.request_session(self.identity, self.location)
        except AuthError as e:
            logger.error(f"{self.description}: error when requesting token: {e}")
            raise
        self.session = session
        logger.info(f"{self.description}: acquired new token")
        return session

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    def context(self, requested_ids: Sequence[str] = ()) -> ScraperContext:
        return ScraperContext(
            identity=self.identity,
            location=self.location,
            config=self.config.snapshot(),
            requested_ids=tuple(requested_ids),
        )

    @trace_span(
        "cycle.run",
        tracer_name="runner",
        attr_from_args=lambda self, strategy, requested_ids=(): {
            "scraper.location": self.location.name,
            "cycle.strategy": type(strategy).__name__,
            "cycle.requested_ids": len(requested_ids),
        },
    )
    async def run(self, strategy: FetchStrategy, requested_ids: Sequence[str] = ()) -> CycleOutcome:
        """Execute one cycle. AuthError/FetchError end the cycle but never escape it."""
        handlers = list(self._subscribers)
        self.state = ScraperState.CYCLE_RUNNING
        try:
            session = await self.authorize()
            batch = await strategy.fetch(session.access_token)
        except (AuthError, FetchError) as e:
            self.consecutive_failures += 1
            logger.error(f"{self.description}: cycle failed ({type(e).__name__}): {e}")
            return CycleOutcome(error=e, requested_ids=tuple(requested_ids))
        except Exception as e:
            self.consecutive_failures += 1
            logger.exception(f"{self.description}: unexpected error during cycle: {e}")
            return CycleOutcome(error=e, requested_ids=tuple(requested_ids))

        self.consecutive_failures = 0
        self.publish(batch, self.context(requested_ids), handlers)
        return CycleOutcome(batch=batch, requested_ids=tuple(requested_ids))

    # ------------------------------------------------------------------
    # Scheduling decisions
    # ------------------------------------------------------------------
    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def clear_stop(self) -> None:
        self._stop_requested = False

    def stop(self) -> None:
        """Request termination; a pending timer is cancelled, a running cycle finishes."""
        self._stop_requested = True
        self.timer.cancel()
        if self.state != ScraperState.CYCLE_RUNNING:
            self.state = ScraperState.STOPPED
        logger.info(f"{self.description}: stop requested")

    def should_run(self) -> bool:
        """Decision point before entering a cycle."""
        if self._stop_requested:
            self.state = ScraperState.STOPPED
            logger.info(f"{self.description}: stopping")
            return False
        return True

    def schedule(self, delay: float, callback: Callable[[], Awaitable[object]], *, windup: bool = False) -> bool:
        """Decision point after a cycle: arm the timer unless stop was requested."""
        if self._stop_requested:
            self.state = ScraperState.STOPPED
            logger.info(f"{self.description}: stopping")
            return False
        self.timer.schedule(delay, callback)
        self.state = ScraperState.WINDUP_SCHEDULED if windup else ScraperState.CYCLE_SCHEDULED
        return True

    def settle(self, scheduled_state: ScraperState = ScraperState.CYCLE_SCHEDULED) -> None:
        """Leave CycleRunning after a cycle that does not reschedule itself.

        ``scheduled_state`` is used when a timer armed before the cycle is still pending.
        """
        if self._stop_requested:
            self.state = ScraperState.STOPPED
        elif self.timer.pending:
            self.state = scheduled_state
        else:
            self.state = ScraperState.IDLE

    def failure_delay(self) -> float:
        """Delay after a failed cycle: the current interval, optionally backed off.

        With ``max_backoff_seconds`` set, the n-th consecutive failure (n >= 2)
        waits ``max(interval, 1) * 2**(n-1)`` capped at ``max_backoff_seconds``,
        never less than the interval itself.
        """
        interval = self.config.interval_seconds
        cap = self.config.max_backoff_seconds
        if cap is None or self.consecutive_failures <= 1:
            return interval
        backoff = RetryHelper(base_delay=max(interval, 1), max_delay=cap)
        return max(interval, backoff.calculate_delay(self.consecutive_failures - 1))
