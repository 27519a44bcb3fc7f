import pytest

from enricher import ItemEnricher
from entities import ScraperState
from errors import FetchError
from conftest import IDENTITY, FakeAuth, FakeItemClient, make_items


def build(location, timer, clock, items=None, error=None):
    client = FakeItemClient({item.id: item for item in items or []}, error=error)
    enricher = ItemEnricher(IDENTITY, location, auth=FakeAuth(clock), client=client, timer=timer, clock=clock)
    return enricher, client


@pytest.mark.asyncio
async def test_missing_items_are_dropped(location, timer, clock):
    a, c = make_items("A", "C")
    enricher, client = build(location, timer, clock, items=[a, c])
    published = []
    enricher.subscribe(lambda batch, ctx: published.append(([item.id for item in batch], ctx.requested_ids)))

    outcome = await enricher.enrich(["A", "B", "C"], auto_reschedule=False)

    assert outcome.ok
    assert [item.id for item in outcome.batch] == ["A", "C"]
    assert published == [(["A", "C"], ("A", "B", "C"))]
    assert sorted(client.calls) == ["A", "B", "C"]
    assert not timer.pending
    assert enricher.state == ScraperState.IDLE


@pytest.mark.asyncio
async def test_auto_reschedule_repeats_same_ids(location, timer, clock):
    enricher, client = build(location, timer, clock, items=make_items("A"))

    await enricher.enrich(["A"])

    assert timer.scheduled == [100.0]
    assert enricher.state == ScraperState.CYCLE_SCHEDULED

    await timer.fire()
    assert client.calls == ["A", "A"]
    assert timer.scheduled == [100.0, 100.0]


@pytest.mark.asyncio
async def test_manual_call_replaces_pending_requeue(location, timer, clock):
    enricher, _ = build(location, timer, clock, items=make_items("A", "B"))

    await enricher.enrich(["A"])
    await enricher.enrich(["B"])

    assert timer.cancelled == 1
    assert timer.pending


@pytest.mark.asyncio
async def test_call_without_reschedule_cancels_pending_requeue(location, timer, clock):
    enricher, _ = build(location, timer, clock, items=make_items("A"))

    await enricher.enrich(["A"])
    assert timer.pending

    await enricher.enrich(["A"], auto_reschedule=False)

    assert not timer.pending
    assert timer.cancelled == 1
    assert enricher.state == ScraperState.IDLE


@pytest.mark.asyncio
async def test_fetch_failure_fails_whole_cycle(location, timer, clock):
    enricher, _ = build(location, timer, clock, error=FetchError("HTTP 500", status=500))
    published = []
    enricher.subscribe(lambda batch, ctx: published.append(batch))

    outcome = await enricher.enrich(["A", "B"], auto_reschedule=False)

    assert not outcome.ok
    assert published == []


@pytest.mark.asyncio
async def test_stopped_enricher_does_nothing(location, timer, clock):
    enricher, client = build(location, timer, clock, items=make_items("A"))
    await enricher.enrich(["A"])

    enricher.stop()

    assert not timer.pending
    assert await enricher.enrich(["A"]) is None
    assert client.calls == ["A"]
    assert enricher.state == ScraperState.STOPPED
