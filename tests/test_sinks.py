import json

import pytest

from entities import Item, PollConfig, ScraperContext
from models import DatabaseQueue
from sinks import DatabaseExporter, JsonFileExporter, store_replies
from conftest import IDENTITY, make_items


@pytest.fixture
def context(location):
    return ScraperContext(identity=IDENTITY, location=location, config=PollConfig())


def test_json_exporter_overwrites_file(tmp_path, context):
    target = tmp_path / "out" / "latest.json"
    exporter = JsonFileExporter(target)

    exporter(make_items(1, 2), context)
    exporter(make_items(3), context)

    assert json.loads(target.read_text(encoding="utf-8")) == [{"post_id": "3", "message": "post 3"}]
    assert [p.name for p in target.parent.iterdir()] == ["latest.json"]


@pytest.mark.asyncio
async def test_database_exporter_stores_batch(tmp_path, context):
    db = DatabaseQueue(str(tmp_path / "items.db"))
    await db.start()
    try:
        exporter = DatabaseExporter(db)
        assert await exporter(make_items(1, 2), context) == 2
        assert await exporter(make_items(2, 3), context) == 1

        stored = await db.execute("get_item", item_id="3")
        assert stored["identity"] == IDENTITY
        assert stored["latitude"] == context.location.latitude
        assert stored["parent_id"] is None
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_store_replies_saves_children_and_marks_requested(tmp_path, context):
    db = DatabaseQueue(str(tmp_path / "items.db"))
    await db.start()
    try:
        await DatabaseExporter(db)(make_items("A", "B"), context)
        enriched = [Item.from_payload({"post_id": "A", "children": [{"post_id": "r1"}, {"post_id": "r2"}, {"note": "no id"}]})]

        stored = await store_replies(db, ["A", "B"], enriched, context)

        assert stored == 2
        assert (await db.execute("get_item", item_id="r1"))["parent_id"] == "A"
        assert await db.execute("count_items") == 4
        assert await db.execute("count_unprocessed") == 0
    finally:
        await db.stop()
