"""Tests for the encrypted record repository.

Tests:
- Sensitive fields are stored only as envelopes
- Save queues exactly one change in the same transaction
- Deletes capture the remote id and drop pending upserts
- Legacy envelope migration
"""

import pytest

from companion.crypto.cipher import KEY_NAME
from companion.crypto.envelope import decode_envelope, encode_legacy, is_legacy, xor_transform
from companion.errors import CryptoError
from companion.storage.records import RecordRepository
from companion.types import SyncStatus

LEGACY_SALT = "fedcba9876543210fedcba9876543210"


class TestSave:
    """Creating and updating records."""

    @pytest.mark.asyncio
    async def test_fields_are_encrypted_at_rest(self, repo, store):
        record_id = await repo.save(
            "journal_entries",
            {"title": "Day 1", "body": "I want to drink", "mood": "anxious", "craving": 7, "tags": ["hard"]},
        )

        row = await store.get_row("journal_entries", record_id)
        for column in ("encrypted_title", "encrypted_body", "encrypted_mood", "encrypted_craving", "encrypted_tags"):
            assert row[column]
            decode_envelope(row[column])
        assert "drink" not in str(row)
        assert row["sync_status"] == SyncStatus.PENDING.value
        assert row["user_id"] == repo.user_id

    @pytest.mark.asyncio
    async def test_get_decrypts(self, repo):
        record_id = await repo.save(
            "journal_entries", {"body": "I want to drink", "craving": 7, "tags": ["hard", "evening"]}
        )

        record = await repo.get("journal_entries", record_id)
        assert record["body"] == "I want to drink"
        assert record["craving"] == "7"
        assert record["tags"] == ["hard", "evening"]
        assert record["title"] is None

    @pytest.mark.asyncio
    async def test_insert_queues_one_change(self, repo, queue):
        record_id = await repo.save("journal_entries", {"body": "entry"})

        items = await queue.dequeue_batch()
        assert [(i.table_name, i.record_id, i.operation) for i in items] == [
            ("journal_entries", record_id, "insert")
        ]

    @pytest.mark.asyncio
    async def test_update_queues_update(self, repo, queue, store):
        record_id = await repo.save("journal_entries", {"body": "first"})
        before = await store.get_row("journal_entries", record_id)

        assert await repo.save("journal_entries", {"body": "second"}, record_id=record_id) == record_id
        await repo.save("journal_entries", {"body": "third"}, record_id=record_id)

        items = await queue.dequeue_batch()
        assert sorted(i.operation for i in items) == ["insert", "update"]
        after = await store.get_row("journal_entries", record_id)
        assert after["created_at"] == before["created_at"]
        assert (await repo.get("journal_entries", record_id))["body"] == "third"

    @pytest.mark.asyncio
    async def test_update_resets_sync_status(self, repo, store):
        record_id = await repo.save("journal_entries", {"body": "first"})
        await store.mark_synced("journal_entries", record_id, "remote-1")

        await repo.save("journal_entries", {"mood": "calm"}, record_id=record_id)
        row = await store.get_row("journal_entries", record_id)
        assert row["sync_status"] == SyncStatus.PENDING.value
        assert row["remote_id"] == "remote-1"

    @pytest.mark.asyncio
    async def test_missing_required_field(self, repo, queue):
        with pytest.raises(ValueError, match="Missing required field"):
            await repo.save("journal_entries", {"title": "no body"})
        assert await queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_unknown_field(self, repo):
        with pytest.raises(ValueError, match="Unknown field"):
            await repo.save("journal_entries", {"body": "x", "location": "home"})

    @pytest.mark.asyncio
    async def test_unknown_table(self, repo):
        with pytest.raises(ValueError, match="Unknown record table"):
            await repo.save("sync_queue", {"record_id": "x"})

    @pytest.mark.asyncio
    async def test_step_completion_sets_completed_at(self, repo):
        record_id = await repo.save(
            "step_work", {"step_number": 1, "question_number": 2, "answer": "I admitted it", "is_complete": True}
        )
        record = await repo.get("step_work", record_id)
        assert record["is_complete"] is True
        assert record["completed_at"]
        assert record["answer"] == "I admitted it"

    @pytest.mark.asyncio
    async def test_other_users_records_are_hidden(self, repo, store, cipher, queue):
        record_id = await repo.save("journal_entries", {"body": "mine"})
        other = RecordRepository(store, cipher, "someone-else")

        assert await other.get("journal_entries", record_id) is None
        assert await other.list("journal_entries") == []
        with pytest.raises(ValueError, match="belongs to another user"):
            await other.save("journal_entries", {"body": "theirs"}, record_id=record_id)

    @pytest.mark.asyncio
    async def test_encrypt_without_key_writes_nothing(self, store, keystore, cipher, queue):
        cipher.delete_key()
        repo = RecordRepository(store, cipher, "user-123")

        with pytest.raises(CryptoError):
            await repo.save("journal_entries", {"body": "x"})
        assert await queue.pending_count() == 0
        assert await store.pending_record_count() == 0

    @pytest.mark.asyncio
    async def test_list(self, repo):
        for n in range(3):
            await repo.save("favorite_meetings", {"meeting_id": f"m-{n}", "notification_enabled": n == 1})

        records = await repo.list("favorite_meetings")
        assert len(records) == 3
        assert sorted(r["meeting_id"] for r in records) == ["m-0", "m-1", "m-2"]
        assert [r["notification_enabled"] for r in records].count(True) == 1


class TestDelete:
    """Local deletes and their queued remote counterpart."""

    @pytest.mark.asyncio
    async def test_delete_captures_remote_id(self, repo, store, queue):
        record_id = await repo.save("journal_entries", {"body": "x"})
        await store.mark_synced("journal_entries", record_id, "remote-9")
        await repo.save("journal_entries", {"body": "y"}, record_id=record_id)

        assert await repo.delete("journal_entries", record_id) is True

        items = await queue.dequeue_batch()
        assert len(items) == 1
        assert items[0].operation == "delete"
        assert items[0].remote_id == "remote-9"
        assert await store.get_row("journal_entries", record_id) is None

    @pytest.mark.asyncio
    async def test_delete_missing(self, repo, queue):
        assert await repo.delete("journal_entries", "missing") is False
        assert await queue.pending_count() == 0


class TestLegacyMigration:
    """Rewriting pre-AEAD envelopes."""

    async def _insert_legacy_entry(self, store, keystore, user_id, text):
        xor_key = (keystore.get(KEY_NAME) + LEGACY_SALT).encode("ascii")
        envelope = encode_legacy(LEGACY_SALT, xor_transform(text.encode("utf-8"), xor_key))

        def _insert(conn):
            conn.execute(
                """INSERT INTO journal_entries
                   (id, user_id, encrypted_body, created_at, updated_at, sync_status, remote_id)
                   VALUES ('legacy-1', ?, ?, '2024-01-01T00:00:00+00:00',
                           '2024-01-01T00:00:00+00:00', 'synced', 'remote-legacy')""",
                (user_id, envelope),
            )

        await store.run(_insert)
        return envelope

    @pytest.mark.asyncio
    async def test_read_does_not_migrate(self, repo, store, keystore):
        envelope = await self._insert_legacy_entry(store, keystore, repo.user_id, "old words")

        record = await repo.get("journal_entries", "legacy-1")
        assert record["body"] == "old words"
        assert (await store.get_row("journal_entries", "legacy-1"))["encrypted_body"] == envelope

    @pytest.mark.asyncio
    async def test_migrate_legacy_envelopes(self, repo, store, keystore, queue):
        await self._insert_legacy_entry(store, keystore, repo.user_id, "old words")

        assert await repo.migrate_legacy_envelopes() == 1

        row = await store.get_row("journal_entries", "legacy-1")
        assert not is_legacy(row["encrypted_body"])
        assert row["sync_status"] == SyncStatus.PENDING.value
        assert (await repo.get("journal_entries", "legacy-1"))["body"] == "old words"
        items = await queue.dequeue_batch()
        assert [(i.record_id, i.operation) for i in items] == [("legacy-1", "update")]

        assert await repo.migrate_legacy_envelopes() == 0
