"""Per-table mapping from local rows to the remote wire schema.

Encrypted columns travel to the backend as their envelope strings; the
backend never sees plaintext. Each table registers one strategy, so
supporting a new table means adding a class and registering it.

Optional string fields default to ``""`` and array fields to ``[]``; the
remote schema never receives ``null`` where it expects a primitive.
"""

import json
import logging
from typing import Any, Dict, Iterator, Optional

from companion.crypto.cipher import EncryptionService
from companion.errors import CryptoError

logger = logging.getLogger(__name__)

RemoteRecord = Dict[str, Any]


class TableStrategy:
    """Maps one local table's rows to remote records.

    Subclasses set ``table`` and implement ``to_remote_schema``. A strategy
    whose endpoint is not implemented on the backend sets
    ``remote_available = False``.
    """

    table: str = ""
    remote_available: bool = True

    def to_remote_schema(
        self,
        row: Dict[str, Any],
        remote_id: str,
        user_id: str,
        cipher: Optional[EncryptionService] = None,
    ) -> RemoteRecord:
        raise NotImplementedError

    def _base(self, row: Dict[str, Any], remote_id: str, user_id: str) -> RemoteRecord:
        return {
            "id": remote_id,
            "user_id": user_id,
            "created_at": row["created_at"],
            "updated_at": row.get("updated_at") or row["created_at"],
        }


class JournalEntryStrategy(TableStrategy):
    table = "journal_entries"

    def to_remote_schema(self, row, remote_id, user_id, cipher=None):
        record = self._base(row, remote_id, user_id)
        record.update(
            title=row.get("encrypted_title") or "",
            content=row["encrypted_body"],
            mood=row.get("encrypted_mood") or "",
            # The tag list is encrypted as one JSON blob; remote expects TEXT[]
            tags=[row["encrypted_tags"]] if row.get("encrypted_tags") else [],
        )
        return record


class StepWorkStrategy(TableStrategy):
    """Remote step work has no question column; question and answer share ``content``."""

    table = "step_work"

    def to_remote_schema(self, row, remote_id, user_id, cipher=None):
        record = self._base(row, remote_id, user_id)
        record.update(
            step_number=row["step_number"],
            content=json.dumps(
                {"question": row["question_number"], "answer": row.get("encrypted_answer") or ""}
            ),
            is_completed=bool(row.get("is_complete")),
        )
        return record


def craving_to_day_rating(craving: int) -> int:
    """Invert a 0-10 craving score into a 1-10 day rating."""
    return max(1, min(10, 11 - craving))


class DailyCheckinStrategy(TableStrategy):
    table = "daily_checkins"

    def to_remote_schema(self, row, remote_id, user_id, cipher=None):
        record = self._base(row, remote_id, user_id)
        record.update(
            checkin_type=row["check_in_type"],
            checkin_date=row["check_in_date"],
            mood=row.get("encrypted_mood") or "",
        )
        if row["check_in_type"] == "morning":
            record["intention"] = row.get("encrypted_intention") or ""
            return record

        record["notes"] = row.get("encrypted_reflection") or ""
        craving_envelope = row.get("encrypted_craving")
        if craving_envelope:
            record["challenges_faced"] = craving_envelope
            day_rating = self._day_rating(craving_envelope, cipher)
            if day_rating is not None:
                record["day_rating"] = day_rating
        return record

    def _day_rating(self, envelope: str, cipher: Optional[EncryptionService]) -> Optional[int]:
        if cipher is None:
            return None
        try:
            return craving_to_day_rating(int(cipher.decrypt(envelope).strip()))
        except (CryptoError, ValueError) as e:
            # The encrypted craving still travels as challenges_faced
            logger.debug(f"No day_rating derived from craving: {e}")
            return None


class FavoriteMeetingStrategy(TableStrategy):
    table = "favorite_meetings"

    def to_remote_schema(self, row, remote_id, user_id, cipher=None):
        record = self._base(row, remote_id, user_id)
        record.update(
            meeting_id=row["meeting_id"],
            notes=row.get("encrypted_notes") or "",
            notification_enabled=bool(row.get("notification_enabled")),
        )
        return record


class ReadingReflectionStrategy(TableStrategy):
    """The backend has no reading reflections endpoint yet."""

    table = "reading_reflections"
    remote_available = False

    def to_remote_schema(self, row, remote_id, user_id, cipher=None):
        record = self._base(row, remote_id, user_id)
        record.update(
            reading_id=row["reading_id"],
            reading_date=row["reading_date"],
            reflection=row["encrypted_reflection"],
            word_count=row.get("word_count") or 0,
        )
        return record


class StrategyRegistry:
    """Table name to strategy lookup."""

    def __init__(self):
        self._strategies: Dict[str, TableStrategy] = {}

    def register(self, strategy: TableStrategy) -> TableStrategy:
        if not strategy.table:
            raise ValueError("Strategy must declare a table")
        self._strategies[strategy.table] = strategy
        return strategy

    def get(self, table: str) -> Optional[TableStrategy]:
        return self._strategies.get(table)

    def __contains__(self, table: str) -> bool:
        return table in self._strategies

    def __iter__(self) -> Iterator[str]:
        return iter(self._strategies)

    def __len__(self) -> int:
        return len(self._strategies)


def default_registry() -> StrategyRegistry:
    registry = StrategyRegistry()
    for strategy_cls in (
        JournalEntryStrategy,
        StepWorkStrategy,
        DailyCheckinStrategy,
        FavoriteMeetingStrategy,
        ReadingReflectionStrategy,
    ):
        registry.register(strategy_cls())
    return registry
