"""
Shared types for the Recovery Companion sync core.

Dataclasses and enums that travel between the store, the queue, the
engine and the orchestrator live here so none of those modules has to
import another just for a type.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

# === Shared Utility Functions ===


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string, returning None for empty or invalid input."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None


# === Enums ===


class SyncStatus(str, Enum):
    """Sync status stored on every record row."""

    PENDING = "pending"
    SYNCED = "synced"


class QueueOperation(str, Enum):
    """Kind of change recorded in the sync queue."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


VALID_OPERATIONS = frozenset(op.value for op in QueueOperation)


class SponsorRole(str, Enum):
    """The local user's role in a sponsor link."""

    SPONSOR = "sponsor"
    SPONSEE = "sponsee"


class ConnectionState(str, Enum):
    """Sponsor handshake states persisted locally.

    NoConnection is represented by the absence of a row.
    """

    INVITE_CREATED = "invite_created"
    CONNECTED = "connected"
    REMOVED = "removed"


# === Sync Types ===


@dataclass
class QueueItem:
    """A pending remote operation in the sync queue."""

    id: int
    table_name: str
    record_id: str
    operation: str  # 'insert', 'update', 'delete'
    remote_id: Optional[str] = None  # captured at enqueue time for deletes
    retry_count: int = 0
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @property
    def is_dead_letter(self) -> bool:
        return self.failed_at is not None


@dataclass
class SyncResult:
    """Result of one sync engine run."""

    synced: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0 and len(self.errors) == 0

    def to_dict(self) -> dict:
        return {"synced": self.synced, "failed": self.failed, "errors": list(self.errors)}


@dataclass
class SponsorConnection:
    """A local record of a sponsor/sponsee link."""

    id: str
    role: SponsorRole
    invite_code: str
    state: ConnectionState
    display_name: Optional[str] = None  # local user's name as shared
    peer_name: Optional[str] = None  # the other party's name
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
