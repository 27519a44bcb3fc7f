from types import SimpleNamespace

import pytest

from enricher import ItemEnricher
from entities import Item, Session
from errors import AuthError, ConfigError, FetchError
from main import PollerOrchestrator, ReplyBackfill, build_client, build_scrapers
from models import DatabaseQueue
from sinks import DatabaseExporter
from conftest import IDENTITY, FakeAuth, FakeItemClient, make_items


def definition(name, lat, poll=None):
    return {"identity": IDENTITY, "location": {"name": name, "latitude": lat, "longitude": 9.0}, "poll": poll or {}}


def test_build_scrapers_staggers_windup():
    definitions = [definition("a", 1.0), definition("b", 2.0), definition("c", 3.0, {"windup_delay_seconds": 1})]

    scrapers = build_scrapers(definitions, client=object(), stagger_seconds=5)

    assert [s.config.windup_delay_seconds for s in scrapers] == [0, 5, 1]
    assert scrapers[1].describe() == "b - 2.0, 9.0"


def test_build_scrapers_rejects_bad_poll_settings():
    with pytest.raises(ConfigError):
        build_scrapers([definition("a", 1.0, {"interval_seconds": -5})], client=object())


def test_build_client_requires_secret():
    cfg = SimpleNamespace(HMAC_SECRET=None)
    with pytest.raises(ConfigError):
        build_client(cfg)


async def make_backfill(tmp_path, location, clock, client):
    db = DatabaseQueue(str(tmp_path / "items.db"))
    await db.start()
    enricher = ItemEnricher(IDENTITY, location, auth=FakeAuth(clock), client=client, clock=clock)
    backfill = ReplyBackfill(enricher, db, batch_size=5, idle_delay=60, settle_delay=2, error_delay=5)
    return backfill, db


@pytest.mark.asyncio
async def test_backfill_idles_without_work(tmp_path, location, clock):
    backfill, db = await make_backfill(tmp_path, location, clock, FakeItemClient({}))
    try:
        assert await backfill.step() == 60
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_backfill_stores_replies(tmp_path, location, clock):
    enriched = Item.from_payload({"post_id": "A", "children": [{"post_id": "r1"}]})
    client = FakeItemClient({"A": enriched})
    backfill, db = await make_backfill(tmp_path, location, clock, client)
    try:
        context = backfill.enricher.runner.context()
        await DatabaseExporter(db)(make_items("A", "B"), context)

        assert await backfill.step() == 2

        assert sorted(client.calls) == ["A", "B"]
        assert await db.execute("count_items") == 3
        assert await db.execute("count_unprocessed") == 0
        assert not backfill.enricher.runner.timer.pending
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_backfill_failure_keeps_items_queued(tmp_path, location, clock):
    client = FakeItemClient({}, error=FetchError("HTTP 502", status=502))
    backfill, db = await make_backfill(tmp_path, location, clock, client)
    try:
        await DatabaseExporter(db)(make_items("A"), backfill.enricher.runner.context())

        assert await backfill.step() == 5
        assert await db.execute("count_unprocessed") == 1
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_backfill_run_exits_when_stopped(tmp_path, location, clock):
    backfill, db = await make_backfill(tmp_path, location, clock, FakeItemClient({}))
    try:
        backfill.stop()
        await backfill.run()
        assert backfill.enricher.runner.stop_requested
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_status_reports_missing_database(tmp_path):
    cfg = SimpleNamespace(
        DATABASE_PATH=str(tmp_path / "absent.db"),
        get_config_summary=lambda: {"scraper_count": 0},
    )

    status = await PollerOrchestrator(cfg).check_status()

    assert status["database"]["status"] == "missing"
    assert status["config"] == {"scraper_count": 0}


@pytest.mark.asyncio
async def test_status_reports_counts_and_oldest_waiting_item(tmp_path):
    db_path = str(tmp_path / "items.db")
    seed = DatabaseQueue(db_path)
    await seed.start()
    try:
        location = {"name": "Wuerzburg", "latitude": 49.79, "longitude": 9.95}
        records = [{"id": i, "payload": {"post_id": i}} for i in ("A", "B")]
        await seed.execute("save_items", identity=IDENTITY, location=location, items=records)
        await seed.execute("mark_processed", item_ids=["A"])
    finally:
        await seed.stop()
    cfg = SimpleNamespace(DATABASE_PATH=db_path, get_config_summary=lambda: {"scraper_count": 1})

    status = await PollerOrchestrator(cfg, store=DatabaseQueue(db_path)).check_status()

    db = status["database"]
    assert db["status"] == "ok"
    assert db["total_items"] == 2
    assert db["unprocessed_items"] == 1
    assert db["oldest_unprocessed"]["item_id"] == "B"
    assert db["oldest_unprocessed"]["location"] == "Wuerzburg"


@pytest.mark.asyncio
async def test_register_requires_configured_location():
    cfg = SimpleNamespace(SCRAPERS=[], SCRAPERS_CONFIG_PATH="scrapers.yaml")
    with pytest.raises(ConfigError):
        await PollerOrchestrator(cfg).register(2)


@pytest.mark.asyncio
async def test_register_keeps_accepted_identities():
    class PickyAuth:
        def __init__(self):
            self.identities = []

        async def request_session(self, identity, location):
            self.identities.append(identity)
            if len(self.identities) == 2:
                raise AuthError("rejected", status=403)
            return Session(access_token="tok", expiration=9999)

        async def close(self):
            pass

    cfg = SimpleNamespace(SCRAPERS=[definition("a", 1.0)], SCRAPERS_CONFIG_PATH="scrapers.yaml")
    auth = PickyAuth()

    registered = await PollerOrchestrator(cfg, client=auth).register(3)

    assert registered == [auth.identities[0], auth.identities[2]]
    assert len(set(auth.identities)) == 3
