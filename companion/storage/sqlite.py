"""SQLite-backed local store.

One connection per operation, opened through ``_connect()``. Public methods
are coroutines that push the blocking sqlite work onto a worker thread, so
callers on the event loop suspend instead of blocking it.
"""

import asyncio
import contextlib
import logging
import sqlite3
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar

from companion.errors import StorageError
from companion.types import SyncStatus, utc_now

from .schema import RECORD_TABLES, get_schema_version, init_db, validate_table_name, wipe_db

logger = logging.getLogger(__name__)

T = TypeVar("T")


def fetch_row(conn: sqlite3.Connection, table: str, record_id: str) -> Optional[Dict[str, Any]]:
    """Load one record row as a plain dict."""
    validate_table_name(table)
    row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()
    return dict(row) if row else None


def insert_row(conn: sqlite3.Connection, table: str, values: Dict[str, Any]) -> None:
    validate_table_name(table)
    columns = list(values)
    placeholders = ", ".join("?" for _ in columns)
    conn.execute(
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
        [values[c] for c in columns],
    )


def update_row(conn: sqlite3.Connection, table: str, record_id: str, values: Dict[str, Any]) -> None:
    """Overwrite the given columns of an existing row."""
    validate_table_name(table)
    assignments = ", ".join(f"{c} = ?" for c in values)
    conn.execute(
        f"UPDATE {table} SET {assignments} WHERE id = ?",
        [*values.values(), record_id],
    )


def delete_row(conn: sqlite3.Connection, table: str, record_id: str) -> bool:
    validate_table_name(table)
    cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
    return cursor.rowcount > 0


class LocalStore:
    """On-device SQLite database for records, the sync queue and sponsor links."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._ready = False
        self._init_future: Optional[asyncio.Future] = None

    @property
    def is_ready(self) -> bool:
        return self._ready

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - Connection close in all cases
        """
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _run_sync(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            with self._connect() as conn:
                return fn(conn, *args)
        except sqlite3.Error as e:
            raise StorageError(f"Local store error: {e}") from e

    async def run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn(conn, *args)`` in one transaction on a worker thread.

        Raises:
            StorageError: If SQLite fails
        """
        return await asyncio.to_thread(self._run_sync, fn, *args)

    # === Lifecycle ===

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._run_sync(init_db)

    async def _initialize(self) -> None:
        await asyncio.to_thread(self._init_db)
        self._ready = True
        logger.debug(f"Local store ready at {self.db_path}")

    async def init(self) -> None:
        """Open the database and bring the schema up to date.

        Idempotent. Concurrent callers share one in-flight initialization;
        if it fails every waiter sees the error and a later call retries.
        """
        if self._ready:
            return
        if self._init_future is None:
            self._init_future = asyncio.ensure_future(self._initialize())
        future = self._init_future
        try:
            await future
        except Exception:
            if self._init_future is future:
                self._init_future = None
            raise

    async def current_schema_version(self) -> int:
        return await self.run(get_schema_version)

    async def wipe(self) -> None:
        """Delete all records, queue items and sponsor links."""
        await self.run(wipe_db)
        logger.info("Local store wiped")

    # === Record rows ===

    async def get_row(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return await self.run(fetch_row, table, record_id)

    async def mark_synced(self, table: str, record_id: str, remote_id: str) -> None:
        """Record a successful push on the local row."""

        def _mark(conn: sqlite3.Connection) -> None:
            validate_table_name(table)
            conn.execute(
                f"UPDATE {table} SET sync_status = ?, remote_id = ? WHERE id = ?",
                (SyncStatus.SYNCED.value, remote_id, record_id),
            )

        await self.run(_mark)

    async def assign_remote_id(self, table: str, record_id: str, remote_id: str) -> None:
        """Persist the remote id ahead of the first push so retries upsert the same row."""

        def _assign(conn: sqlite3.Connection) -> None:
            validate_table_name(table)
            conn.execute(
                f"UPDATE {table} SET remote_id = ? WHERE id = ? AND remote_id IS NULL",
                (remote_id, record_id),
            )

        await self.run(_assign)

    async def reset_pending(self, table: str, record_id: str) -> None:
        def _reset(conn: sqlite3.Connection) -> None:
            validate_table_name(table)
            conn.execute(
                f"UPDATE {table} SET sync_status = ?, updated_at = ? WHERE id = ?",
                (SyncStatus.PENDING.value, utc_now(), record_id),
            )

        await self.run(_reset)

    async def pending_record_count(self) -> int:
        """Count record rows not yet confirmed by the backend."""

        def _count(conn: sqlite3.Connection) -> int:
            total = 0
            for table in RECORD_TABLES:
                validate_table_name(table)
                total += conn.execute(
                    f"SELECT COUNT(*) FROM {table} WHERE sync_status = ?",
                    (SyncStatus.PENDING.value,),
                ).fetchone()[0]
            return total

        return await self.run(_count)
