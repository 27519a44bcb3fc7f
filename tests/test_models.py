import pytest

from models import DatabaseQueue

LOCATION = {"name": "Wuerzburg", "latitude": 49.79, "longitude": 9.95}


def records(*ids):
    return [{"id": str(i), "payload": {"post_id": str(i), "message": f"post {i}"}} for i in ids]


@pytest.mark.asyncio
async def test_save_items_ignores_known_ids(tmp_path):
    db = DatabaseQueue(str(tmp_path / "items.db"))
    await db.start()
    try:
        assert await db.execute("save_items", identity="id-1", location=LOCATION, items=records(1, 2)) == 2
        assert await db.execute("save_items", identity="id-2", location=LOCATION, items=records(2, 3)) == 1
        assert await db.execute("count_items") == 3

        stored = await db.execute("get_item", item_id="2")
        assert stored["identity"] == "id-1"
        assert stored["location_name"] == "Wuerzburg"
        assert stored["data"]["message"] == "post 2"
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_unprocessed_queue_excludes_replies_and_processed(tmp_path):
    db = DatabaseQueue(str(tmp_path / "items.db"))
    await db.start()
    try:
        await db.execute("save_items", identity="id-1", location=LOCATION, items=records(1, 2, 3))
        await db.execute("save_items", identity="id-1", location=LOCATION, items=records("r1"), parent_id="1")

        assert await db.execute("list_unprocessed", limit=2) == ["1", "2"]
        assert await db.execute("count_unprocessed") == 3

        assert await db.execute("mark_processed", item_ids=["1", "2"]) == 2
        assert await db.execute("list_unprocessed", limit=10) == ["3"]
        assert await db.execute("count_unprocessed") == 1
        assert await db.execute("mark_processed", item_ids=[]) == 0
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_data_survives_restart(tmp_path):
    path = str(tmp_path / "items.db")
    db = DatabaseQueue(path)
    await db.start()
    await db.execute("save_items", identity="id-1", location=LOCATION, items=records(1))
    await db.stop()

    db = DatabaseQueue(path)
    await db.start()
    try:
        assert await db.execute("count_items") == 1
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_unknown_operation_raises(tmp_path):
    db = DatabaseQueue(str(tmp_path / "items.db"))
    await db.start()
    try:
        with pytest.raises(RuntimeError, match="Unknown operation"):
            await db.execute("drop_everything")
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_missing_schema_file_fails_start(tmp_path):
    db = DatabaseQueue(str(tmp_path / "items.db"), schema_path=str(tmp_path / "missing.sql"))
    with pytest.raises(FileNotFoundError):
        await db.start()
    assert not db.running


@pytest.mark.asyncio
async def test_execute_requires_running_worker(tmp_path):
    db = DatabaseQueue(str(tmp_path / "items.db"))
    with pytest.raises(RuntimeError, match="not running"):
        await db.execute("count_items")
