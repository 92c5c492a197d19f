"""
Recovery Companion - offline-first encrypted sync core.

Encrypted local records, a durable sync queue and the engine that drains
it into the remote backend.
"""

from .crypto import EncryptionService
from .session import SessionContext
from .storage import LocalStore, RecordRepository, SyncQueue
from .sync import SyncEngine, SyncOrchestrator

try:
    from importlib.metadata import version

    __version__ = version("recovery-companion")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "EncryptionService",
    "LocalStore",
    "RecordRepository",
    "SessionContext",
    "SyncEngine",
    "SyncOrchestrator",
    "SyncQueue",
]
