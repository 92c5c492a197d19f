"""Tests for local store initialization and schema migrations.

Tests:
- Fresh databases are stamped at the latest version
- init() is idempotent and shares one in-flight initialization
- A failed init can be retried
- Older databases are migrated forward in order
- Partial prior runs do not block startup
- Wipe clears user data but keeps the migration ledger
"""

import asyncio
import logging
import sqlite3

import pytest

from companion.errors import StorageError
from companion.storage import schema as schema_module
from companion.storage import sqlite as sqlite_module
from companion.storage.schema import MIGRATIONS, SCHEMA_VERSION, validate_table_name
from companion.storage.sqlite import LocalStore

LEGACY_SCHEMA = """
CREATE TABLE journal_entries (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    encrypted_title TEXT,
    encrypted_body TEXT NOT NULL,
    encrypted_mood TEXT,
    encrypted_craving TEXT,
    encrypted_tags TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    sync_status TEXT DEFAULT 'pending',
    remote_id TEXT
);
CREATE TABLE step_work (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    step_number INTEGER NOT NULL,
    question_number INTEGER NOT NULL,
    encrypted_answer TEXT,
    is_complete INTEGER DEFAULT 0,
    completed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    sync_status TEXT DEFAULT 'pending'
);
CREATE TABLE daily_checkins (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    check_in_type TEXT NOT NULL,
    check_in_date TEXT NOT NULL,
    encrypted_intention TEXT,
    encrypted_reflection TEXT,
    encrypted_mood TEXT,
    encrypted_craving TEXT,
    created_at TEXT NOT NULL,
    sync_status TEXT DEFAULT 'pending'
);
CREATE TABLE sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    table_name TEXT NOT NULL,
    record_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    created_at TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    UNIQUE(table_name, record_id, operation)
);
"""


def _columns(db_path, table):
    conn = sqlite3.connect(db_path)
    try:
        return {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
    finally:
        conn.close()


def _tables(db_path):
    conn = sqlite3.connect(db_path)
    try:
        return {
            row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
    finally:
        conn.close()


def _create_legacy_db(db_path, extra_sql=""):
    conn = sqlite3.connect(db_path)
    conn.executescript(LEGACY_SCHEMA + extra_sql)
    conn.execute(
        "INSERT INTO sync_queue (table_name, record_id, operation, created_at) "
        "VALUES ('journal_entries', 'old-1', 'insert', '2024-01-01T00:00:00+00:00')"
    )
    conn.commit()
    conn.close()


class TestFreshDatabase:
    """A brand-new database gets the current schema directly."""

    @pytest.mark.asyncio
    async def test_fresh_db_is_stamped_at_latest_version(self, db_path):
        store = LocalStore(db_path)
        await store.init()

        assert store.is_ready
        assert await store.current_schema_version() == SCHEMA_VERSION

    @pytest.mark.asyncio
    async def test_fresh_db_has_all_tables(self, db_path):
        store = LocalStore(db_path)
        await store.init()

        tables = _tables(db_path)
        for table in schema_module.ALLOWED_TABLES:
            assert table in tables

    @pytest.mark.asyncio
    async def test_fresh_db_records_every_migration(self, db_path):
        store = LocalStore(db_path)
        await store.init()

        conn = sqlite3.connect(db_path)
        versions = [r[0] for r in conn.execute("SELECT version FROM schema_migrations ORDER BY version")]
        conn.close()
        assert versions == [m.version for m in MIGRATIONS]

    @pytest.mark.asyncio
    async def test_creates_parent_directory(self, tmp_path):
        store = LocalStore(tmp_path / "nested" / "dir" / "companion.db")
        await store.init()
        assert (tmp_path / "nested" / "dir" / "companion.db").exists()


class TestInitIdempotency:
    """init() may be called any number of times, concurrently."""

    @pytest.mark.asyncio
    async def test_second_init_is_noop(self, db_path):
        store = LocalStore(db_path)
        await store.init()
        await store.init()
        assert await store.current_schema_version() == SCHEMA_VERSION

    @pytest.mark.asyncio
    async def test_concurrent_init_runs_schema_once(self, db_path, monkeypatch):
        calls = []
        real_init_db = sqlite_module.init_db

        def counting_init_db(conn):
            calls.append(1)
            real_init_db(conn)

        monkeypatch.setattr(sqlite_module, "init_db", counting_init_db)

        store = LocalStore(db_path)
        await asyncio.gather(store.init(), store.init(), store.init())

        assert len(calls) == 1
        assert store.is_ready

    @pytest.mark.asyncio
    async def test_failed_init_can_be_retried(self, db_path, monkeypatch):
        real_init_db = sqlite_module.init_db
        attempts = []

        def flaky_init_db(conn):
            attempts.append(1)
            if len(attempts) == 1:
                raise sqlite3.OperationalError("disk I/O error")
            real_init_db(conn)

        monkeypatch.setattr(sqlite_module, "init_db", flaky_init_db)

        store = LocalStore(db_path)
        with pytest.raises(StorageError, match="disk I/O error"):
            await store.init()
        assert not store.is_ready

        await store.init()
        assert store.is_ready
        assert len(attempts) == 2


class TestMigrations:
    """Existing databases are migrated forward."""

    @pytest.mark.asyncio
    async def test_legacy_db_is_migrated(self, db_path):
        _create_legacy_db(db_path)

        store = LocalStore(db_path)
        await store.init()

        assert await store.current_schema_version() == SCHEMA_VERSION
        assert {"failed_at", "remote_id"} <= _columns(db_path, "sync_queue")
        assert {"updated_at", "remote_id"} <= _columns(db_path, "daily_checkins")
        assert "remote_id" in _columns(db_path, "step_work")
        assert "sponsor_connections" in _tables(db_path)

    @pytest.mark.asyncio
    async def test_migration_preserves_existing_rows(self, db_path):
        _create_legacy_db(db_path)

        store = LocalStore(db_path)
        await store.init()

        conn = sqlite3.connect(db_path)
        row = conn.execute("SELECT record_id, failed_at, remote_id FROM sync_queue").fetchone()
        conn.close()
        assert row == ("old-1", None, None)

    @pytest.mark.asyncio
    async def test_partial_prior_run_is_tolerated(self, db_path, caplog):
        # failed_at already exists but no ledger entry records migration 1
        _create_legacy_db(db_path, "ALTER TABLE sync_queue ADD COLUMN failed_at TEXT;")

        store = LocalStore(db_path)
        with caplog.at_level(logging.WARNING, logger="companion.storage.schema"):
            await store.init()

        assert await store.current_schema_version() == SCHEMA_VERSION
        assert "treating as applied" in caplog.text

    @pytest.mark.asyncio
    async def test_only_newer_migrations_run(self, db_path):
        _create_legacy_db(db_path)
        conn = sqlite3.connect(db_path)
        schema_module.run_migrations(conn)
        conn.commit()

        # A second pass finds nothing to do
        assert schema_module.run_migrations(conn) == 0
        conn.close()

    def test_migrations_are_strictly_increasing(self):
        versions = [m.version for m in MIGRATIONS]
        assert versions == sorted(versions)
        assert len(set(versions)) == len(versions)


class TestWipe:
    """Full local wipe on logout."""

    @pytest.mark.asyncio
    async def test_wipe_clears_data_keeps_ledger(self, store, queue):
        await queue.enqueue("journal_entries", "r1", "insert")
        await store.wipe()

        assert await queue.pending_count() == 0
        assert await store.current_schema_version() == SCHEMA_VERSION


class TestTableValidation:
    """Table names are checked before any SQL is built from them."""

    def test_known_table_passes(self):
        assert validate_table_name("sync_queue") == "sync_queue"

    def test_unknown_table_rejected(self):
        with pytest.raises(ValueError, match="Invalid table name"):
            validate_table_name("users; DROP TABLE sync_queue")
