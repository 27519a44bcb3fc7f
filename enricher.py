#!/usr/bin/env python3
"""
On-demand item enricher.

Fetches full detail (including nested replies) for a caller-supplied list of
item ids. Items the API no longer knows are dropped from the batch; any other
failure fails the whole cycle.
"""

from __future__ import annotations

from time import time
from typing import Callable, List, Optional, Protocol, Sequence

from config import get_logger
from entities import CycleOutcome, Item, Location, ScraperState
from runner import AuthProvider, CycleRunner, Subscriber
from utils import gather_all_or_nothing

# Module-specific logger
logger = get_logger("enricher")

DEFAULT_REQUEUE_DELAY_SECONDS = 100.0


class ItemClient(Protocol):
    async def fetch_one(self, token: str, item_id: str) -> Optional[Item]: ...


class ItemLookup:
    """Fetch strategy: one concurrent detail request per id, absences dropped."""

    def __init__(self, client: ItemClient, ids: Sequence[str]):
        self.client = client
        self.ids = list(ids)

    async def fetch(self, token: str) -> List[Item]:
        results = await gather_all_or_nothing(self.client.fetch_one(token, item_id) for item_id in self.ids)
        found = [item for item in results if item is not None]
        if len(found) < len(self.ids):
            logger.info(f"{len(self.ids) - len(found)} of {len(self.ids)} items no longer exist")
        return found


class ItemEnricher:
    """Externally triggered enrichment built on the shared cycle runner."""

    def __init__(
        self,
        identity: str,
        location: Location,
        *,
        auth: AuthProvider,
        client: ItemClient,
        requeue_delay_seconds: float = DEFAULT_REQUEUE_DELAY_SECONDS,
        timer=None,
        clock: Callable[[], float] = time,
    ):
        self.runner = CycleRunner(
            identity, location, auth=auth, timer=timer, clock=clock, description="Item Enricher"
        )
        self.client = client
        self.requeue_delay_seconds = requeue_delay_seconds

    @property
    def state(self) -> ScraperState:
        return self.runner.state

    def subscribe(self, handler: Subscriber) -> None:
        self.runner.subscribe(handler)

    def stop(self) -> None:
        self.runner.stop()

    async def enrich(self, ids: Sequence[str], auto_reschedule: bool = True) -> Optional[CycleOutcome]:
        """Fetch detail for ``ids`` and publish the items that still exist.

        With ``auto_reschedule`` the same request is repeated after
        ``requeue_delay_seconds``; otherwise the caller decides when to call again.
        Returns None when the enricher has been stopped.
        """
        if not self.runner.should_run():
            return None
        ids = list(ids)
        outcome = await self.runner.run(ItemLookup(self.client, ids), requested_ids=ids)
        # A manual call replaces any requeue that is still waiting
        self.runner.timer.cancel()
        if auto_reschedule:
            self.runner.schedule(self.requeue_delay_seconds, lambda: self.enrich(ids, True))
        else:
            self.runner.settle()
        return outcome
