#!/usr/bin/env python3
"""
Batch subscribers.

- JsonFileExporter: keeps a JSON file with the latest batch (atomic replace)
- DatabaseExporter: inserts every batch into the item store
- store_replies: persists the replies fetched by the enricher
"""

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Sequence

from config import get_logger
from entities import ITEM_ID_FIELD, Item, Location, ScraperContext

# Module-specific logger
logger = get_logger("sinks")

# Field of an enriched item holding its replies
REPLIES_FIELD = "children"


def _location_record(location: Location) -> Dict[str, Any]:
    return {
        "name": location.name,
        "latitude": location.latitude,
        "longitude": location.longitude,
    }


def _item_records(items: Sequence[Item]) -> List[Dict[str, Any]]:
    return [{"id": item.id, "payload": item.payload} for item in items]


class JsonFileExporter:
    """Overwrite ``path`` with the payloads of every published batch."""

    def __init__(self, path):
        self.path = Path(path)

    def __call__(self, batch: List[Item], context: ScraperContext) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(mode='w', encoding='utf-8', suffix='.json', dir=self.path.parent, delete=False) as tf:
            json.dump([item.payload for item in batch], tf, ensure_ascii=False, indent=2)
            tf.flush()
            os.fsync(tf.fileno())
            temp_path = tf.name
        shutil.move(temp_path, self.path)
        logger.info(f"{context.location.describe()}: exported {len(batch)} items to {self.path}")


class DatabaseExporter:
    """Store every published item; ids already in the store are left untouched."""

    def __init__(self, store):
        self.store = store

    async def __call__(self, batch: List[Item], context: ScraperContext) -> int:
        new_items = await self.store.execute(
            "save_items",
            identity=context.identity,
            location=_location_record(context.location),
            items=_item_records(batch),
        )
        logger.info(f"{context.location.describe()}: stored {new_items} new of {len(batch)} items")
        return new_items


async def store_replies(store, requested_ids: Sequence[str], items: Sequence[Item], context: ScraperContext) -> int:
    """Save the replies of each enriched item, then mark every requested id processed.

    Requested ids the API no longer knows are marked too, so the backfill
    does not ask for them again.
    """
    stored = 0
    location = _location_record(context.location)
    for item in items:
        replies = [
            reply for reply in item.payload.get(REPLIES_FIELD) or []
            if isinstance(reply, dict) and reply.get(ITEM_ID_FIELD)
        ]
        if not replies:
            continue
        stored += await store.execute(
            "save_items",
            identity=context.identity,
            location=location,
            items=[{"id": str(reply[ITEM_ID_FIELD]), "payload": reply} for reply in replies],
            parent_id=item.id,
        )
    await store.execute("mark_processed", item_ids=list(requested_ids))
    logger.info(f"Stored {stored} replies for {len(items)} of {len(requested_ids)} requested items")
    return stored
