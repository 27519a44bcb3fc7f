#!/usr/bin/env python3
"""
Timer-driven polling scraper.

Each cycle fetches every channel for the scraper's location concurrently,
merges the results in channel order keeping the first occurrence of each id,
and adjusts the polling interval from the overlap with the previous batch:

- overlap < min_overlap: the feed moves faster than we poll, shorten the interval
- overlap > max_overlap: we are mostly seeing items twice, lengthen the interval

Both thresholds are checked independently, so a configuration with
min_overlap > max_overlap can apply both steps in the same cycle.
"""

from __future__ import annotations

from time import time
from typing import Callable, List, Optional, Protocol, Sequence

from config import get_logger
from entities import CycleOutcome, Item, Location, PollConfig, ScraperState, count_overlap, merge_unique
from runner import AuthProvider, CycleRunner, Subscriber
from utils import format_duration, gather_all_or_nothing

# Module-specific logger
logger = get_logger("scraper")

CHANNELS = ("recent", "popular", "discussed")


class ChannelClient(Protocol):
    async def fetch_all(self, token: str, channel: str, location: Location) -> List[Item]: ...


class ChannelFanout:
    """Fetch strategy: page every channel to exhaustion and merge without duplicates."""

    def __init__(self, client: ChannelClient, location: Location, channels: Sequence[str] = CHANNELS):
        self.client = client
        self.location = location
        self.channels = tuple(channels)

    async def fetch(self, token: str) -> List[Item]:
        results = await gather_all_or_nothing(
            self.client.fetch_all(token, channel, self.location) for channel in self.channels
        )
        batch = merge_unique(*results)
        logger.debug(
            "Merged %s into %d unique items",
            ", ".join(f"{channel}={len(items)}" for channel, items in zip(self.channels, results)),
            len(batch),
        )
        return batch


class PollingScraper:
    """Polls the channels of one location on behalf of one identity."""

    def __init__(
        self,
        identity: str,
        location: Location,
        config: Optional[PollConfig] = None,
        *,
        auth: AuthProvider,
        client: ChannelClient,
        channels: Sequence[str] = CHANNELS,
        timer=None,
        clock: Callable[[], float] = time,
    ):
        self.runner = CycleRunner(identity, location, config, auth=auth, timer=timer, clock=clock)
        self.strategy = ChannelFanout(client, location, channels)
        self.previous_batch: Optional[List[Item]] = None

    @property
    def identity(self) -> str:
        return self.runner.identity

    @property
    def location(self) -> Location:
        return self.runner.location

    @property
    def config(self) -> PollConfig:
        return self.runner.config

    @property
    def state(self) -> ScraperState:
        return self.runner.state

    def describe(self) -> str:
        return self.runner.description

    def subscribe(self, handler: Subscriber) -> None:
        self.runner.subscribe(handler)

    def start(self) -> bool:
        """Schedule the first cycle after the windup delay.

        Returns False when a timer is already pending or a cycle is running;
        in the latter case a previous stop request is withdrawn so the running
        cycle schedules its successor as usual.
        """
        self.runner.clear_stop()
        if self.runner.timer.pending or self.runner.state == ScraperState.CYCLE_RUNNING:
            return False
        delay = self.config.windup_delay_seconds
        logger.info(f"{self.describe()}: starting in {format_duration(delay)}")
        return self.runner.schedule(delay, self.scrape, windup=True)

    def stop(self) -> None:
        self.runner.stop()

    async def run_once(self) -> CycleOutcome:
        """Run a single cycle with interval adaptation but without scheduling another."""
        previous_state = self.runner.state
        outcome = await self.runner.run(self.strategy)
        if outcome.ok:
            self._remember(outcome.batch)
        self.runner.settle(
            previous_state if previous_state == ScraperState.WINDUP_SCHEDULED else ScraperState.CYCLE_SCHEDULED
        )
        return outcome

    async def scrape(self) -> Optional[CycleOutcome]:
        """Timer callback: one cycle followed by exactly one reschedule."""
        if not self.runner.should_run():
            return None
        logger.info(f"{self.describe()}: scraping")
        outcome = await self.runner.run(self.strategy)
        if outcome.ok:
            self._remember(outcome.batch)
            delay = self.config.interval_seconds
        else:
            delay = self.runner.failure_delay()
            logger.info(f"{self.describe()}: retrying in {format_duration(delay)}")
        self.runner.schedule(delay, self.scrape)
        return outcome

    def _remember(self, batch: List[Item]) -> None:
        if self.previous_batch is not None:
            self.update_interval(batch)
        self.previous_batch = batch

    def update_interval(self, new_batch: List[Item]) -> float:
        """Adapt ``interval_seconds`` from the overlap with the previous batch."""
        overlap = count_overlap(new_batch, self.previous_batch or [])
        old_interval = self.config.interval_seconds
        interval = old_interval

        if overlap < self.config.min_overlap:
            interval -= self.config.min_overlap_step
        if overlap > self.config.max_overlap:
            interval += self.config.max_overlap_step
        interval = max(0, interval)

        self.config.interval_seconds = interval
        logger.info(f"{self.describe()}: update interval (overlap {overlap}): {old_interval}s -> {interval}s")
        return interval
