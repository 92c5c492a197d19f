"""Durable queue of pending remote operations.

At most one live entry exists per (table_name, record_id, operation).
``retry_count`` only ever grows; an entry whose count reaches the retry
limit is stamped with ``failed_at`` and kept as a dead letter.
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from companion.types import VALID_OPERATIONS, QueueItem, parse_datetime, utc_now

from .sqlite import LocalStore

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
MAX_ERROR_LENGTH = 500

_COLUMNS = (
    "id, table_name, record_id, operation, remote_id, retry_count, "
    "last_error, created_at, failed_at"
)


def _row_to_item(row: sqlite3.Row) -> QueueItem:
    return QueueItem(
        id=row["id"],
        table_name=row["table_name"],
        record_id=row["record_id"],
        operation=row["operation"],
        remote_id=row["remote_id"],
        retry_count=row["retry_count"] or 0,
        last_error=row["last_error"],
        created_at=parse_datetime(row["created_at"]),
        failed_at=parse_datetime(row["failed_at"]),
    )


def enqueue_change(
    conn: sqlite3.Connection,
    table: str,
    record_id: str,
    operation: str,
    remote_id: Optional[str] = None,
) -> None:
    """Queue a change inside an open transaction.

    Uses UPSERT so a repeated change keeps its original ``created_at`` and
    ``retry_count``. A non-null ``remote_id`` is never overwritten by null.
    """
    if operation not in VALID_OPERATIONS:
        raise ValueError(f"Invalid operation: {operation}")
    if not table or not record_id:
        raise ValueError("table and record_id are required")

    conn.execute(
        """INSERT INTO sync_queue
           (table_name, record_id, operation, remote_id, created_at, retry_count)
           VALUES (?, ?, ?, ?, ?, 0)
           ON CONFLICT(table_name, record_id, operation)
           DO UPDATE SET
               remote_id = COALESCE(excluded.remote_id, sync_queue.remote_id)""",
        (table, record_id, operation, remote_id, utc_now()),
    )


class SyncQueue:
    """Queue operations over the ``sync_queue`` table."""

    def __init__(self, store: LocalStore, max_retries: int = MAX_RETRIES):
        self._store = store
        self.max_retries = max_retries

    async def enqueue(
        self,
        table: str,
        record_id: str,
        operation: str,
        remote_id: Optional[str] = None,
    ) -> None:
        await self._store.run(enqueue_change, table, record_id, operation, remote_id)

    async def dequeue_batch(self, limit: int = 50, max_retries: Optional[int] = None) -> List[QueueItem]:
        """Oldest live entries first, skipping exhausted and parked ones."""
        max_retries = self.max_retries if max_retries is None else max_retries

        def _select(conn: sqlite3.Connection) -> List[QueueItem]:
            rows = conn.execute(
                f"""SELECT {_COLUMNS} FROM sync_queue
                    WHERE failed_at IS NULL AND retry_count < ?
                    ORDER BY created_at, id
                    LIMIT ?""",
                (max_retries, limit),
            ).fetchall()
            return [_row_to_item(row) for row in rows]

        return await self._store.run(_select)

    async def ack(self, item_id: int) -> None:
        def _delete(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM sync_queue WHERE id = ?", (item_id,))

        await self._store.run(_delete)

    async def nack(
        self,
        item_id: int,
        error: str,
        max_retries: Optional[int] = None,
        permanent: bool = False,
    ) -> int:
        """Record a failed attempt.

        Args:
            item_id: Queue entry id
            error: Failure message, truncated before storage
            max_retries: Count at which the entry becomes a dead letter
            permanent: Park the entry now regardless of its count

        Returns:
            The entry's new retry count (0 if it no longer exists)
        """
        max_retries = self.max_retries if max_retries is None else max_retries

        def _record_failure(conn: sqlite3.Connection) -> int:
            conn.execute(
                """UPDATE sync_queue
                   SET retry_count = retry_count + 1,
                       last_error = ?
                   WHERE id = ?""",
                ((error or "")[:MAX_ERROR_LENGTH], item_id),
            )
            row = conn.execute(
                "SELECT retry_count, failed_at, table_name, record_id FROM sync_queue WHERE id = ?",
                (item_id,),
            ).fetchone()
            if row is None:
                return 0
            retry_count = row["retry_count"]
            if row["failed_at"] is None and (permanent or retry_count >= max_retries):
                conn.execute(
                    "UPDATE sync_queue SET failed_at = ? WHERE id = ?",
                    (utc_now(), item_id),
                )
                logger.warning(
                    f"Queue item {row['table_name']}/{row['record_id']} "
                    f"moved to dead letters after {retry_count} attempt(s)"
                )
            return retry_count

        return await self._store.run(_record_failure)

    async def get(self, item_id: int) -> Optional[QueueItem]:
        def _get(conn: sqlite3.Connection) -> Optional[QueueItem]:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM sync_queue WHERE id = ?", (item_id,)
            ).fetchone()
            return _row_to_item(row) if row else None

        return await self._store.run(_get)

    async def dead_letters(self, limit: int = 100) -> List[QueueItem]:
        """Entries that will not be retried automatically, newest failure first."""
        max_retries = self.max_retries

        def _select(conn: sqlite3.Connection) -> List[QueueItem]:
            rows = conn.execute(
                f"""SELECT {_COLUMNS} FROM sync_queue
                    WHERE failed_at IS NOT NULL OR retry_count >= ?
                    ORDER BY failed_at DESC, id DESC
                    LIMIT ?""",
                (max_retries, limit),
            ).fetchall()
            return [_row_to_item(row) for row in rows]

        return await self._store.run(_select)

    async def pending_count(self) -> int:
        """Entries still eligible for a sync run."""
        max_retries = self.max_retries

        def _count(conn: sqlite3.Connection) -> int:
            return conn.execute(
                "SELECT COUNT(*) FROM sync_queue WHERE failed_at IS NULL AND retry_count < ?",
                (max_retries,),
            ).fetchone()[0]

        return await self._store.run(_count)

    async def status(self) -> Dict[str, Any]:
        """Summary counts for the CLI and diagnostics."""
        max_retries = self.max_retries

        def _status(conn: sqlite3.Connection) -> Dict[str, Any]:
            pending = conn.execute(
                "SELECT COUNT(*) FROM sync_queue WHERE failed_at IS NULL AND retry_count < ?",
                (max_retries,),
            ).fetchone()[0]
            total = conn.execute("SELECT COUNT(*) FROM sync_queue").fetchone()[0]

            by_table = {
                row["table_name"]: row["cnt"]
                for row in conn.execute(
                    "SELECT table_name, COUNT(*) AS cnt FROM sync_queue GROUP BY table_name"
                ).fetchall()
            }
            by_operation = {
                row["operation"]: row["cnt"]
                for row in conn.execute(
                    "SELECT operation, COUNT(*) AS cnt FROM sync_queue GROUP BY operation"
                ).fetchall()
            }
            return {
                "pending": pending,
                "dead_letter": total - pending,
                "total": total,
                "by_table": by_table,
                "by_operation": by_operation,
            }

        return await self._store.run(_status)
