#!/usr/bin/env python3
"""
Item store for the poller.

SQLite access is serialised through a single asyncio worker so that
scrapers, the database sink and the reply backfill can share one
connection without locking.
"""

from os import path, access, R_OK
from time import time
import json
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait, wait_for, FIRST_COMPLETED, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any, Iterable

from config import get_logger
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")


def initialize_database(conn, schema_path: str, size_limit_mb: int = 1) -> None:
    """Create the items table from the schema file if it does not exist yet."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='items'")
        if cursor.fetchone() is None:
            logger.info(f"Creating item store schema from {schema_path}")
            cursor.executescript(_read_schema_file(schema_path, size_limit_mb))
            conn.commit()
            logger.info("Item store schema created")
        else:
            logger.debug("Item store schema already present")
    except Exception as e:
        logger.error(f"Could not prepare item store schema: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file(schema_path: str, size_limit_mb: int) -> str:
    """Return the schema SQL after checking the file is present, readable and small."""
    try:
        if not path.isfile(schema_path):
            raise FileNotFoundError(f"Schema file not found at {schema_path}")
        if not access(schema_path, R_OK):
            raise PermissionError(f"No read permission for schema file at {schema_path}")
        file_size = path.getsize(schema_path)
        max_size = size_limit_mb * 1024 * 1024
        if file_size > max_size:
            raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")
        with open(schema_path, 'r') as f:
            return f.read()
    except Exception as e:
        logger.error(f"Could not read schema file {schema_path}: {e}")
        raise


class DatabaseQueue:
    """Asyncio front end for the SQLite item store; see ``OPERATIONS`` for what ``execute`` accepts."""

    OPERATIONS = frozenset({
        "save_items", "list_unprocessed", "mark_processed",
        "count_items", "count_unprocessed", "get_item",
    })

    def __init__(self, db_path: str, schema_path: Optional[str] = None, schema_size_limit_mb: int = 1):
        self.db_path = db_path
        self.schema_path = schema_path or path.join(path.dirname(path.abspath(__file__)), "schema.sql")
        self.schema_size_limit_mb = schema_size_limit_mb
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready: Optional[Event] = None

    async def start(self) -> None:
        """Start the database worker and wait until the schema is in place."""
        if self.running:
            return
        self.running = True
        self._ready = Event()
        self.worker_task = create_task(self._worker())
        ready = create_task(self._ready.wait())
        # Surface schema errors instead of hanging on the ready event
        done, _ = await wait({ready, self.worker_task}, return_when=FIRST_COMPLETED)
        if self.worker_task in done and not ready.done():
            ready.cancel()
            self.running = False
            self.worker_task.result()
        logger.info("Item store worker running")

    async def stop(self) -> None:
        """Stop the worker, close the connection and release waiting callers."""
        if not self.running:
            return
        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass
        if self.conn:
            self.conn.close()
            self.conn = None
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()
        logger.info("Item store worker stopped")

    async def _worker(self) -> None:
        """Run queued operations one at a time on the worker's connection."""
        if not path.isfile(self.db_path):
            logger.info(f"Creating item store at {self.db_path}")
        else:
            logger.info(f"Opening item store at {self.db_path}")

        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        try:
            initialize_database(self.conn, self.schema_path, self.schema_size_limit_mb)
        except Exception:
            self.conn.close()
            self.conn = None
            raise
        self._ready.set()

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name) if operation_name in self.OPERATIONS else None
                    if method is not None:
                        self.results[operation_id] = {"result": method(**params)}
                    else:
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                except Exception as e:
                    logger.error(f"Item store operation {operation_name} failed: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Item store worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation on the worker and return its result."""
        if not self.running:
            raise RuntimeError("Database worker is not running")
        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event
        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id, {"error": "Database worker stopped"})
            if "error" in result:
                raise RuntimeError(result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Item operations
    def save_items(self, identity: str, location: Dict[str, Any], items: List[Dict[str, Any]], parent_id: Optional[str] = None) -> int:
        """Insert items, ignoring ids that are already stored. Returns the number of new rows.

        Each entry of ``items`` is ``{"id": ..., "payload": {...}}``.
        """
        new_items = 0
        now = int(time())
        cursor = self.conn.cursor()
        try:
            for item in items:
                cursor.execute(
                    '''
                    INSERT OR IGNORE INTO items
                        (item_id, parent_id, identity, location_name, latitude, longitude, data, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ''',
                    (
                        str(item["id"]),
                        parent_id,
                        identity,
                        location.get("name"),
                        location.get("latitude"),
                        location.get("longitude"),
                        json.dumps(item["payload"], ensure_ascii=False),
                        now,
                    ),
                )
                if cursor.rowcount > 0:
                    new_items += 1
            self.conn.commit()
            return new_items
        except Error as e:
            logger.error(f"Error saving {len(items)} items: {e}")
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def list_unprocessed(self, limit: int = 10) -> List[str]:
        """Oldest top-level item ids whose replies have not been fetched yet."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                '''
                SELECT item_id FROM items
                WHERE processed = 0 AND parent_id IS NULL
                ORDER BY created_at, id
                LIMIT ?
                ''',
                (limit,),
            )
            return [row["item_id"] for row in cursor.fetchall()]
        finally:
            cursor.close()

    def mark_processed(self, item_ids: Iterable[str]) -> int:
        """Flag items as processed. Returns the number of rows updated."""
        ids = [str(item_id) for item_id in item_ids]
        if not ids:
            return 0
        cursor = self.conn.cursor()
        try:
            placeholders = ','.join(['?' for _ in ids])
            cursor.execute(f"UPDATE items SET processed = 1 WHERE item_id IN ({placeholders})", ids)
            self.conn.commit()
            return cursor.rowcount
        finally:
            cursor.close()

    def count_items(self) -> int:
        """Return total number of rows in items table."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT COUNT(*) FROM items")
            result = cursor.fetchone()
            return int(result[0]) if result else 0
        finally:
            cursor.close()

    def count_unprocessed(self) -> int:
        """Return the number of top-level items still waiting for their replies."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT COUNT(*) FROM items WHERE processed = 0 AND parent_id IS NULL")
            result = cursor.fetchone()
            return int(result[0]) if result else 0
        finally:
            cursor.close()

    def get_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        """Return a stored row with its decoded payload, or None."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM items WHERE item_id = ?", (str(item_id),))
            row = cursor.fetchone()
            if row is None:
                return None
            record = dict(row)
            record["data"] = json.loads(record["data"])
            return record
        finally:
            cursor.close()
