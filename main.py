#!/usr/bin/env python3
"""
Geo Feed Poller

Runs one polling scraper per configured identity+location and routes every
batch to the configured sinks:

1. Poll the recent/popular/discussed channels of each location
2. Store new items in the SQLite item store (and/or export them as JSON)
3. Optionally backfill replies for stored items through the item enricher

Supports continuous mode, single-cycle mode, reply backfill only, identity
registration and a status report.
"""

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from api import FeedApiClient
from config import config, get_logger
from enricher import ItemEnricher
from entities import Location, PollConfig, generate_identity
from errors import AuthError, ConfigError
from models import DatabaseQueue
from scraper import PollingScraper
from signing import HmacSigner
from sinks import DatabaseExporter, JsonFileExporter, store_replies
from telemetry import init_telemetry, trace_span
from utils import format_duration

# Module-specific logger
logger = get_logger("main")


def build_client(cfg=config) -> FeedApiClient:
    """Create the shared API client from configuration."""
    if not cfg.HMAC_SECRET:
        raise ConfigError("HMAC_SECRET is not set (environment, .env or SECRETS_FILE)")
    return FeedApiClient(
        cfg.API_BASE_URL,
        HmacSigner(cfg.HMAC_SECRET),
        client_id=cfg.CLIENT_ID,
        client_version=cfg.CLIENT_VERSION,
        api_version=cfg.API_VERSION,
        user_agent=cfg.USER_AGENT,
        page_size=cfg.PAGE_SIZE,
        timeout=cfg.HTTP_TIMEOUT,
        max_retries=cfg.MAX_RETRIES,
        retry_delay_base=cfg.RETRY_DELAY_BASE,
        requests_per_minute=cfg.REQUESTS_PER_MINUTE,
    )


def build_scrapers(definitions: List[Dict[str, Any]], client, stagger_seconds: float = 0.0) -> List[PollingScraper]:
    """Construct one PollingScraper per definition.

    Scrapers without an explicit ``windup_delay_seconds`` start ``stagger_seconds``
    apart so that they do not all hit the API at the same moment.
    """
    scrapers = []
    for index, definition in enumerate(definitions):
        poll = dict(definition.get("poll") or {})
        if "windup_delay_seconds" not in poll and stagger_seconds:
            poll["windup_delay_seconds"] = index * stagger_seconds
        scrapers.append(PollingScraper(
            definition["identity"],
            Location.from_mapping(definition["location"]),
            PollConfig.from_mapping(poll),
            auth=client,
            client=client,
        ))
    return scrapers


class ReplyBackfill:
    """Drives the item enricher over stored items whose replies are still missing."""

    def __init__(
        self,
        enricher: ItemEnricher,
        store: DatabaseQueue,
        *,
        batch_size: int = 10,
        idle_delay: float = 60.0,
        settle_delay: float = 2.0,
        error_delay: float = 5.0,
    ):
        self.enricher = enricher
        self.store = store
        self.batch_size = batch_size
        self.idle_delay = idle_delay
        self.settle_delay = settle_delay
        self.error_delay = error_delay
        self.stop_event = asyncio.Event()

    async def step(self) -> float:
        """Enrich one batch of unprocessed items. Returns the delay before the next step."""
        ids = await self.store.execute("list_unprocessed", limit=self.batch_size)
        if not ids:
            logger.debug(f"No unprocessed items, idling for {format_duration(self.idle_delay)}")
            return self.idle_delay
        outcome = await self.enricher.enrich(ids, auto_reschedule=False)
        if outcome is None or not outcome.ok:
            return self.error_delay
        await store_replies(self.store, ids, outcome.batch, self.enricher.runner.context(ids))
        return self.settle_delay

    async def run(self) -> None:
        logger.info("Reply backfill started")
        while not self.stop_event.is_set():
            delay = await self.step()
            if self.stop_event.is_set():
                break
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue
        logger.info("Reply backfill stopped")

    def stop(self) -> None:
        self.stop_event.set()
        self.enricher.stop()


class PollerOrchestrator:
    """Wires configuration, the API client, scrapers and sinks together."""

    def __init__(self, cfg=config, client: Optional[FeedApiClient] = None, store: Optional[DatabaseQueue] = None):
        self.cfg = cfg
        self.client = client
        self.store = store

    async def _open(self, use_db: bool = True, use_client: bool = True) -> None:
        if use_client and self.client is None:
            self.client = build_client(self.cfg)
        if use_db and self.store is None:
            self.store = DatabaseQueue(self.cfg.DATABASE_PATH, self.cfg.SCHEMA_FILE_PATH, self.cfg.SCHEMA_FILE_SIZE_LIMIT_MB)
        if use_db:
            await self.store.start()

    async def _close(self) -> None:
        if self.store is not None:
            await self.store.stop()
        if self.client is not None:
            await self.client.close()

    def _definitions(self) -> List[Dict[str, Any]]:
        if not self.cfg.SCRAPERS:
            raise ConfigError(f"No scrapers configured in {self.cfg.SCRAPERS_CONFIG_PATH}")
        return self.cfg.SCRAPERS

    def _scrapers(self, no_db: bool, export_json: Optional[str]) -> List[PollingScraper]:
        scrapers = build_scrapers(self._definitions(), self.client, self.cfg.STAGGER_SECONDS)
        for scraper in scrapers:
            if not no_db:
                scraper.subscribe(DatabaseExporter(self.store))
            if export_json:
                scraper.subscribe(JsonFileExporter(export_json))
        return scrapers

    def _backfill(self) -> ReplyBackfill:
        first = self._definitions()[0]
        enricher = ItemEnricher(
            first["identity"],
            Location.from_mapping(first["location"]),
            auth=self.client,
            client=self.client,
            requeue_delay_seconds=self.cfg.ENRICH_REQUEUE_DELAY_SECONDS,
        )
        return ReplyBackfill(
            enricher,
            self.store,
            batch_size=self.cfg.ENRICH_BATCH_SIZE,
            idle_delay=self.cfg.ENRICH_IDLE_DELAY_SECONDS,
            settle_delay=self.cfg.ENRICH_SETTLE_DELAY_SECONDS,
            error_delay=self.cfg.ENRICH_ERROR_DELAY_SECONDS,
        )

    @trace_span("poller.run", tracer_name="main")
    async def run(self, no_db: bool = False, export_json: Optional[str] = None, with_replies: bool = False) -> None:
        """Start every scraper and keep polling until cancelled."""
        if with_replies and no_db:
            raise ConfigError("--with-replies needs the item store; drop --no-db")
        scrapers: List[PollingScraper] = []
        backfill: Optional[ReplyBackfill] = None
        backfill_task = None
        try:
            await self._open(use_db=not no_db)
            scrapers = self._scrapers(no_db, export_json)
            for scraper in scrapers:
                scraper.start()
            logger.info(f"Started {len(scrapers)} scrapers")
            if with_replies:
                backfill = self._backfill()
                backfill_task = asyncio.create_task(backfill.run())
            await asyncio.Event().wait()
        finally:
            for scraper in scrapers:
                scraper.stop()
            if backfill is not None:
                backfill.stop()
                await asyncio.gather(backfill_task, return_exceptions=True)
            for scraper in scrapers:
                await scraper.runner.drain_publishers()
            await self._close()

    @trace_span("poller.once", tracer_name="main")
    async def run_once(self, no_db: bool = False, export_json: Optional[str] = None) -> bool:
        """Run one cycle per scraper. Returns True when every cycle succeeded."""
        await self._open(use_db=not no_db)
        try:
            scrapers = self._scrapers(no_db, export_json)
            outcomes = await asyncio.gather(*(scraper.run_once() for scraper in scrapers))
            for scraper in scrapers:
                await scraper.runner.drain_publishers()
            for scraper, outcome in zip(scrapers, outcomes):
                if outcome.ok:
                    logger.info(f"✅ {scraper.describe()}: {len(outcome.batch)} items")
                else:
                    logger.error(f"❌ {scraper.describe()}: {outcome.error}")
            return all(outcome.ok for outcome in outcomes)
        finally:
            await self._close()

    @trace_span("poller.replies", tracer_name="main")
    async def run_replies(self) -> None:
        """Run the reply backfill until cancelled."""
        await self._open(use_db=True)
        backfill = self._backfill()
        try:
            await backfill.run()
        finally:
            backfill.stop()
            await self._close()

    @trace_span("poller.register", tracer_name="main")
    async def register(self, count: int) -> List[str]:
        """Generate ``count`` identities and keep those the API accepts."""
        location = Location.from_mapping(self._definitions()[0]["location"])
        await self._open(use_db=False)
        registered = []
        try:
            for _ in range(count):
                identity = generate_identity()
                try:
                    await self.client.request_session(identity, location)
                except AuthError as e:
                    logger.warning(f"Could not register identity {identity[:8]}...: {e}")
                    continue
                registered.append(identity)
        finally:
            await self._close()
        logger.info(f"Registered {len(registered)} of {count} identities")
        return registered

    async def check_status(self) -> Dict[str, Any]:
        """Collect configuration, item store counts and the oldest item awaiting replies."""
        status: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "config": self.cfg.get_config_summary(),
        }
        if not Path(self.cfg.DATABASE_PATH).exists():
            status["database"] = {"status": "missing", "message": "Database file not found"}
            return status
        await self._open(use_db=True, use_client=False)
        try:
            status["database"] = {
                "status": "ok",
                "total_items": await self.store.execute("count_items"),
                "unprocessed_items": await self.store.execute("count_unprocessed"),
            }
            oldest = await self.store.execute("list_unprocessed", limit=1)
            if oldest:
                item = await self.store.execute("get_item", item_id=oldest[0])
                status["database"]["oldest_unprocessed"] = {
                    "item_id": item["item_id"],
                    "location": item["location_name"],
                    "created_at": item["created_at"],
                }
        finally:
            await self._close()
        return status

    @staticmethod
    def print_status(status: Dict[str, Any]) -> None:
        print("\n📊 Geo Feed Poller Status")
        print(f"⏰ {status['timestamp']}")
        summary = status["config"]
        print(f"\n⚙️  Scrapers: {summary['scraper_count']} (stagger {summary['stagger_seconds']}s)")
        print(f"   API: {summary['api_base_url']} (client {summary['client_version']})")
        db = status["database"]
        if db["status"] == "ok":
            print("\n💾 Database:")
            print(f"   📰 Items: {db['total_items']}")
            print(f"   ⏳ Awaiting replies: {db['unprocessed_items']}")
            oldest = db.get("oldest_unprocessed")
            if oldest:
                since = datetime.fromtimestamp(oldest["created_at"], timezone.utc).isoformat()
                print(f"   🕰️  Oldest waiting: {oldest['item_id']} ({oldest['location']}, since {since})")
        else:
            print(f"\n💾 Database: {db['status'].upper()} - {db.get('message', 'Unknown error')}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Geo Feed Poller')
    parser.add_argument('mode', choices=['run', 'once', 'replies', 'register', 'status'],
                        help='Operation mode')
    parser.add_argument('--no-db', action='store_true',
                        help='Do not store items in the SQLite item store')
    parser.add_argument('--export-json', type=str, metavar='PATH',
                        help='Overwrite PATH with the latest batch of every cycle')
    parser.add_argument('--with-replies', action='store_true',
                        help='Run the reply backfill alongside the scrapers (run mode)')
    parser.add_argument('--count', type=int, default=1,
                        help='Number of identities to register (register mode)')

    args = parser.parse_args()

    init_telemetry("geo-feed-poller")
    orchestrator = PollerOrchestrator()

    try:
        if args.mode == 'run':
            asyncio.run(orchestrator.run(no_db=args.no_db, export_json=args.export_json, with_replies=args.with_replies))

        elif args.mode == 'once':
            success = asyncio.run(orchestrator.run_once(no_db=args.no_db, export_json=args.export_json))
            sys.exit(0 if success else 1)

        elif args.mode == 'replies':
            asyncio.run(orchestrator.run_replies())

        elif args.mode == 'register':
            if args.count < 1:
                parser.error("--count must be at least 1")
            for identity in asyncio.run(orchestrator.register(args.count)):
                print(identity)

        elif args.mode == 'status':
            orchestrator.print_status(asyncio.run(orchestrator.check_status()))

    except KeyboardInterrupt:
        logger.info("👋 Poller shutting down")
    except ConfigError as e:
        logger.error(f"💥 Configuration error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
