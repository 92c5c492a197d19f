"""Database schema and migration logic for the local store.

Contains:
- Record table definitions (RECORD_TABLES) used by the repository and wipe
- Table allowlist (ALLOWED_TABLES, validate_table_name)
- Schema DDL (SCHEMA) in its current shape
- Versioned forward-only migrations (MIGRATIONS, run_migrations)
- Database initialization (init_db) and full local wipe (wipe_db)
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Dict, Tuple

from companion.types import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordTable:
    """A synced record table.

    ``encrypted`` names logical fields stored as ``encrypted_<name>`` envelope
    columns; ``plain`` names columns stored as-is.
    """

    name: str
    encrypted: Tuple[str, ...]
    plain: Tuple[str, ...] = ()
    required: Tuple[str, ...] = ()

    def column_for(self, field_name: str) -> str:
        if field_name in self.encrypted:
            return f"encrypted_{field_name}"
        if field_name in self.plain:
            return field_name
        raise ValueError(f"Unknown field for {self.name}: {field_name}")


RECORD_TABLES: Dict[str, RecordTable] = {
    "journal_entries": RecordTable(
        "journal_entries",
        encrypted=("title", "body", "mood", "craving", "tags"),
        required=("body",),
    ),
    "step_work": RecordTable(
        "step_work",
        encrypted=("answer",),
        plain=("step_number", "question_number", "is_complete", "completed_at"),
        required=("step_number", "question_number"),
    ),
    "daily_checkins": RecordTable(
        "daily_checkins",
        encrypted=("intention", "reflection", "mood", "craving"),
        plain=("check_in_type", "check_in_date"),
        required=("check_in_type", "check_in_date"),
    ),
    "favorite_meetings": RecordTable(
        "favorite_meetings",
        encrypted=("notes",),
        plain=("meeting_id", "notification_enabled"),
        required=("meeting_id",),
    ),
    "reading_reflections": RecordTable(
        "reading_reflections",
        encrypted=("reflection",),
        plain=("reading_id", "reading_date", "word_count"),
        required=("reading_id", "reading_date", "reflection"),
    ),
}

# Allowed table names for SQL queries (security: prevents SQL injection via table names)
ALLOWED_TABLES = frozenset(
    set(RECORD_TABLES) | {"sync_queue", "sponsor_connections", "schema_migrations"}
)

# Wiped on logout, children first
WIPE_ORDER = (
    "sync_queue",
    "sponsor_connections",
    "reading_reflections",
    "favorite_meetings",
    "daily_checkins",
    "step_work",
    "journal_entries",
)


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection.

    Raises:
        ValueError: If table name is not in allowlist
    """
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


SCHEMA = """
-- Migration ledger
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Journal entries
CREATE TABLE IF NOT EXISTS journal_entries (
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
CREATE INDEX IF NOT EXISTS idx_journal_user ON journal_entries(user_id);
CREATE INDEX IF NOT EXISTS idx_journal_created ON journal_entries(created_at);

-- Step work answers
CREATE TABLE IF NOT EXISTS step_work (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    step_number INTEGER NOT NULL CHECK(step_number >= 1 AND step_number <= 12),
    question_number INTEGER NOT NULL,
    encrypted_answer TEXT,
    is_complete INTEGER DEFAULT 0,
    completed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    sync_status TEXT DEFAULT 'pending',
    remote_id TEXT,
    UNIQUE(user_id, step_number, question_number)
);
CREATE INDEX IF NOT EXISTS idx_step_user ON step_work(user_id);

-- Morning/evening check-ins
CREATE TABLE IF NOT EXISTS daily_checkins (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    check_in_type TEXT NOT NULL CHECK(check_in_type IN ('morning','evening')),
    check_in_date TEXT NOT NULL,
    encrypted_intention TEXT,
    encrypted_reflection TEXT,
    encrypted_mood TEXT,
    encrypted_craving TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    sync_status TEXT DEFAULT 'pending',
    remote_id TEXT
);
CREATE INDEX IF NOT EXISTS idx_checkin_user ON daily_checkins(user_id);
CREATE INDEX IF NOT EXISTS idx_checkin_date ON daily_checkins(check_in_date);

-- Favorite meetings
CREATE TABLE IF NOT EXISTS favorite_meetings (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    meeting_id TEXT NOT NULL,
    encrypted_notes TEXT,
    notification_enabled INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    sync_status TEXT DEFAULT 'pending',
    remote_id TEXT
);

-- Daily reading reflections
CREATE TABLE IF NOT EXISTS reading_reflections (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    reading_id TEXT NOT NULL,
    reading_date TEXT NOT NULL,
    encrypted_reflection TEXT NOT NULL,
    word_count INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    sync_status TEXT DEFAULT 'pending',
    remote_id TEXT
);

-- Pending remote operations
CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    table_name TEXT NOT NULL,
    record_id TEXT NOT NULL,
    operation TEXT NOT NULL CHECK(operation IN ('insert','update','delete')),
    remote_id TEXT,
    created_at TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    failed_at TEXT,
    UNIQUE(table_name, record_id, operation)
);
CREATE INDEX IF NOT EXISTS idx_sync_queue_table ON sync_queue(table_name);
CREATE INDEX IF NOT EXISTS idx_sync_queue_created ON sync_queue(created_at);

-- Sponsor links (local only, never synced)
CREATE TABLE IF NOT EXISTS sponsor_connections (
    id TEXT PRIMARY KEY,
    role TEXT NOT NULL CHECK(role IN ('sponsor','sponsee')),
    invite_code TEXT NOT NULL,
    display_name TEXT,
    peer_name TEXT,
    state TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    expires_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_sponsor_code ON sponsor_connections(invite_code);
"""


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    statements: Tuple[str, ...]


MIGRATIONS: Tuple[Migration, ...] = (
    Migration(
        1,
        "Track permanently failed sync items",
        ("ALTER TABLE sync_queue ADD COLUMN failed_at TEXT",),
    ),
    Migration(
        2,
        "Capture remote ids on queue items for delete propagation",
        ("ALTER TABLE sync_queue ADD COLUMN remote_id TEXT",),
    ),
    Migration(
        3,
        "Add remote ids and updated_at to check-ins and step work",
        (
            "ALTER TABLE daily_checkins ADD COLUMN updated_at TEXT",
            "ALTER TABLE daily_checkins ADD COLUMN remote_id TEXT",
            "ALTER TABLE step_work ADD COLUMN remote_id TEXT",
        ),
    ),
    Migration(
        4,
        "Create sponsor_connections",
        (
            """CREATE TABLE IF NOT EXISTS sponsor_connections (
                id TEXT PRIMARY KEY,
                role TEXT NOT NULL CHECK(role IN ('sponsor','sponsee')),
                invite_code TEXT NOT NULL,
                display_name TEXT,
                peer_name TEXT,
                state TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                expires_at TEXT
            )""",
        ),
    ),
)

SCHEMA_VERSION = max(m.version for m in MIGRATIONS)


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Highest applied migration version, 0 if none recorded."""
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations "
        "(version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
    )
    row = conn.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
    return row[0] or 0


def _record_migration(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
        (version, utc_now()),
    )


def run_migrations(conn: sqlite3.Connection) -> int:
    """Apply every migration newer than the recorded version, in order.

    A statement that fails is logged and treated as already applied; partial
    prior runs (e.g. a column that already exists) must not block startup.

    Returns:
        Number of migrations recorded by this call.
    """
    current = get_schema_version(conn)
    pending = sorted((m for m in MIGRATIONS if m.version > current), key=lambda m: m.version)
    if not pending:
        return 0

    logger.info(f"Running {len(pending)} database migration(s) from version {current}")
    for migration in pending:
        logger.debug(f"Migration {migration.version}: {migration.description}")
        for statement in migration.statements:
            try:
                conn.execute(statement)
            except sqlite3.OperationalError as e:
                logger.warning(
                    f"Migration {migration.version} statement failed, treating as applied: {e}"
                )
        _record_migration(conn, migration.version)
        conn.commit()

    return len(pending)


def init_db(conn: sqlite3.Connection) -> None:
    """Initialize the database schema.

    Existing databases are migrated before the full schema runs so that
    ``CREATE ... IF NOT EXISTS`` never races an older table shape. A fresh
    database gets the current shape directly and is stamped at SCHEMA_VERSION.
    """
    tables = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    table_names = {t[0] for t in tables}
    fresh = "sync_queue" not in table_names

    if not fresh:
        run_migrations(conn)

    conn.executescript(SCHEMA)

    if fresh:
        for migration in MIGRATIONS:
            _record_migration(conn, migration.version)
        logger.info(f"Created local schema at version {SCHEMA_VERSION}")

    conn.commit()


def wipe_db(conn: sqlite3.Connection) -> None:
    """Delete every user row. The migration ledger is kept."""
    for table in WIPE_ORDER:
        validate_table_name(table)
        conn.execute(f"DELETE FROM {table}")
