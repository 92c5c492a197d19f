"""Record repository: the write path from caller to encrypted row and queue entry.

Every save encrypts the table's sensitive fields, writes the row as
``pending`` and queues one remote operation in the same transaction.
"""

import json
import logging
import sqlite3
import uuid
from typing import Any, Dict, List, Optional

from companion.crypto.cipher import EncryptionService
from companion.crypto.envelope import is_legacy
from companion.types import QueueOperation, SyncStatus, utc_now

from .queue import enqueue_change
from .schema import RECORD_TABLES, RecordTable, validate_table_name
from .sqlite import LocalStore, delete_row, fetch_row, insert_row, update_row

logger = logging.getLogger(__name__)

# Encrypted fields holding JSON rather than plain text
JSON_FIELDS = frozenset({"tags"})
BOOLEAN_FIELDS = frozenset({"is_complete", "notification_enabled"})


def _get_table(table: str) -> RecordTable:
    layout = RECORD_TABLES.get(table)
    if layout is None:
        raise ValueError(f"Unknown record table: {table}")
    return layout


class RecordRepository:
    """Encrypted CRUD over the record tables for one user."""

    def __init__(self, store: LocalStore, cipher: EncryptionService, user_id: str):
        if not user_id:
            raise ValueError("user_id is required")
        self._store = store
        self._cipher = cipher
        self.user_id = user_id

    # === Field encoding ===

    def _encrypt_field(self, name: str, value: Any) -> Optional[str]:
        if value is None:
            return None
        if name in JSON_FIELDS:
            text = json.dumps(value)
        else:
            text = value if isinstance(value, str) else str(value)
        return self._cipher.encrypt(text)

    def _decrypt_field(self, name: str, envelope: Optional[str]) -> Any:
        if envelope is None:
            return None
        text = self._cipher.decrypt(envelope)
        if name in JSON_FIELDS:
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                logger.debug(f"Field {name} is not JSON, returning raw text")
                return text
        return text

    def _to_row(self, layout: RecordTable, values: Dict[str, Any]) -> Dict[str, Any]:
        row: Dict[str, Any] = {}
        for name, value in values.items():
            column = layout.column_for(name)
            if name in layout.encrypted:
                row[column] = self._encrypt_field(name, value)
            elif name in BOOLEAN_FIELDS:
                row[column] = 1 if value else 0
            else:
                row[column] = value
        return row

    def _from_row(self, layout: RecordTable, row: Dict[str, Any]) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "id": row["id"],
            "user_id": row["user_id"],
            "sync_status": row["sync_status"],
            "remote_id": row.get("remote_id"),
            "created_at": row["created_at"],
            "updated_at": row.get("updated_at"),
        }
        for name in layout.plain:
            value = row.get(name)
            record[name] = bool(value) if name in BOOLEAN_FIELDS else value
        for name in layout.encrypted:
            record[name] = self._decrypt_field(name, row.get(f"encrypted_{name}"))
        return record

    # === Operations ===

    async def save(self, table: str, values: Dict[str, Any], record_id: Optional[str] = None) -> str:
        """Create or update a record.

        Args:
            table: Record table name
            values: Logical field values (plain text for encrypted fields)
            record_id: Existing record id to update; a new uuid4 if omitted

        Returns:
            The record id

        Raises:
            ValueError: Unknown table or field, or missing required field
        """
        layout = _get_table(table)
        record_id = record_id or str(uuid.uuid4())
        row = self._to_row(layout, values)
        if values.get("is_complete") and "completed_at" not in values and "completed_at" in layout.plain:
            row["completed_at"] = utc_now()
        user_id = self.user_id

        def _save(conn: sqlite3.Connection) -> str:
            existing = fetch_row(conn, table, record_id)
            now = utc_now()
            row.update(updated_at=now, sync_status=SyncStatus.PENDING.value)
            if existing is None:
                missing = [f for f in layout.required if values.get(f) is None]
                if missing:
                    raise ValueError(f"Missing required field(s) for {table}: {', '.join(missing)}")
                row.update(id=record_id, user_id=user_id, created_at=now)
                insert_row(conn, table, row)
                operation = QueueOperation.INSERT.value
            else:
                if existing["user_id"] != user_id:
                    raise ValueError(f"Record {table}/{record_id} belongs to another user")
                update_row(conn, table, record_id, row)
                operation = QueueOperation.UPDATE.value
            enqueue_change(conn, table, record_id, operation)
            return operation

        operation = await self._store.run(_save)
        logger.debug(f"Saved {table}/{record_id} ({operation})")
        return record_id

    async def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load and decrypt one record, or None if absent."""
        layout = _get_table(table)
        row = await self._store.get_row(table, record_id)
        if row is None or row["user_id"] != self.user_id:
            return None
        return self._from_row(layout, row)

    async def list(self, table: str, limit: int = 100) -> List[Dict[str, Any]]:
        layout = _get_table(table)
        user_id = self.user_id

        def _select(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
            validate_table_name(table)
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
            return [dict(r) for r in rows]

        rows = await self._store.run(_select)
        return [self._from_row(layout, row) for row in rows]

    async def delete(self, table: str, record_id: str) -> bool:
        """Delete a record locally and queue its remote deletion.

        The remote id is captured on the queue entry because the row is gone
        by the time the engine runs. Pending upserts for the record are dropped.

        Returns:
            True if a row was deleted
        """
        _get_table(table)

        def _delete(conn: sqlite3.Connection) -> bool:
            existing = fetch_row(conn, table, record_id)
            if existing is None:
                return False
            delete_row(conn, table, record_id)
            conn.execute(
                "DELETE FROM sync_queue WHERE table_name = ? AND record_id = ? AND operation != ?",
                (table, record_id, QueueOperation.DELETE.value),
            )
            enqueue_change(
                conn, table, record_id, QueueOperation.DELETE.value, existing.get("remote_id")
            )
            return True

        deleted = await self._store.run(_delete)
        if deleted:
            logger.debug(f"Deleted {table}/{record_id}")
        return deleted

    async def migrate_legacy_envelopes(self) -> int:
        """Rewrite legacy envelopes in the current format.

        Each rewritten row goes back to ``pending`` with an update queued.

        Returns:
            Number of rows rewritten
        """
        cipher = self._cipher
        user_id = self.user_id

        def _migrate(conn: sqlite3.Connection, layout: RecordTable) -> int:
            columns = [f"encrypted_{name}" for name in layout.encrypted]
            rows = conn.execute(
                f"SELECT id, {', '.join(columns)} FROM {layout.name} WHERE user_id = ?",
                (user_id,),
            ).fetchall()
            rewritten = 0
            for row in rows:
                changes = {
                    column: cipher.migrate_envelope(row[column])
                    for column in columns
                    if row[column] and is_legacy(row[column])
                }
                if not changes:
                    continue
                changes.update(updated_at=utc_now(), sync_status=SyncStatus.PENDING.value)
                update_row(conn, layout.name, row["id"], changes)
                enqueue_change(conn, layout.name, row["id"], QueueOperation.UPDATE.value)
                rewritten += 1
            return rewritten

        total = 0
        for layout in RECORD_TABLES.values():
            validate_table_name(layout.name)
            count = await self._store.run(_migrate, layout)
            if count:
                logger.info(f"Migrated legacy envelopes on {count} {layout.name} row(s)")
            total += count
        return total
