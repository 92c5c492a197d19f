"""Local storage for Recovery Companion.

SQLite tables for records, the sync queue and sponsor links, plus the
repository that encrypts record fields on the way in.
"""

from .queue import MAX_RETRIES, SyncQueue
from .records import RecordRepository
from .schema import ALLOWED_TABLES, RECORD_TABLES, SCHEMA_VERSION, validate_table_name
from .sqlite import LocalStore

__all__ = [
    "ALLOWED_TABLES",
    "LocalStore",
    "MAX_RETRIES",
    "RECORD_TABLES",
    "RecordRepository",
    "SCHEMA_VERSION",
    "SyncQueue",
    "validate_table_name",
]
