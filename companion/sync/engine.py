"""Sync engine: drains the queue into the remote backend.

Items are pushed strictly one at a time in queue order. Each item ends a
run in one of three ways:

- pushed: local row marked synced, queue entry acknowledged
- failed: ``nack`` (retry later, or dead letter once the limit is hit)
- endpoint unavailable: entry acknowledged, row reset to pending

Delivery is at-least-once; the backend upsert is idempotent by ``id``.
"""

import logging
import uuid
from typing import Optional

from companion.errors import CryptoError, ProtocolError, RecordNotFoundError, RemoteError, StorageError
from companion.session import SessionContext
from companion.types import QueueItem, QueueOperation, SyncResult

from .remote import RemoteBackend
from .scheduler import Scheduler, default_scheduler
from .transforms import StrategyRegistry, TableStrategy, default_registry

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50
MAX_RETRIES = 3
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 30.0

UNAVAILABLE_ENDPOINT_MESSAGE = "Remote endpoint not available: {table}"

# Per-item failures that become a retry; anything else propagates
ITEM_ERRORS = (RemoteError, StorageError, CryptoError, ProtocolError)


class SyncEngine:
    """Pushes queued local changes to the remote backend."""

    def __init__(
        self,
        session: SessionContext,
        remote: RemoteBackend,
        registry: Optional[StrategyRegistry] = None,
        scheduler: Optional[Scheduler] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_retries: int = MAX_RETRIES,
        backoff_base: float = BACKOFF_BASE_SECONDS,
        backoff_max: float = BACKOFF_MAX_SECONDS,
    ):
        self.session = session
        self.remote = remote
        self.registry = registry or default_registry()
        self.scheduler = scheduler or default_scheduler()
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    def backoff_delay(self, retry_count: int) -> float:
        """Seconds to wait before retrying an item that has failed ``retry_count`` times."""
        if retry_count <= 0:
            return 0.0
        return min(self.backoff_base * (2 ** (retry_count - 1)), self.backoff_max)

    async def run(self, limit: Optional[int] = None) -> SyncResult:
        """Push one batch of queued changes.

        Args:
            limit: Batch size override

        Returns:
            SyncResult with synced/failed counts and per-item error strings
        """
        result = SyncResult()
        queue = self.session.queue

        try:
            items = await queue.dequeue_batch(limit or self.batch_size, self.max_retries)
        except StorageError as e:
            logger.error(f"Could not read sync queue: {e}")
            result.errors.append(str(e))
            return result

        if not items:
            logger.debug("Sync queue empty")
            return result

        logger.debug(f"Pushing {len(items)} queued change(s)")
        for item in items:
            if not self.session.is_active:
                logger.info("Session ended mid-sync, stopping")
                break

            delay = self.backoff_delay(item.retry_count)
            if delay:
                logger.debug(f"Backing off {delay}s before retry {item.retry_count} of {_label(item)}")
                await self.scheduler.sleep(delay)

            try:
                if await self._process(item):
                    result.synced += 1
                else:
                    result.failed += 1
                    result.errors.append(
                        f"{_label(item)}: {UNAVAILABLE_ENDPOINT_MESSAGE.format(table=item.table_name)}"
                    )
            except ProtocolError as e:
                await self._record_failure(item, e, result, permanent=True)
            except ITEM_ERRORS as e:
                await self._record_failure(item, e, result)

        logger.info(f"Sync complete: synced={result.synced}, failed={result.failed}")
        return result

    async def _process(self, item: QueueItem) -> bool:
        """Push one item. Returns False if its remote endpoint is unavailable."""
        strategy = self.registry.get(item.table_name)
        if strategy is None:
            raise ProtocolError(f"Unknown table: {item.table_name}")

        if not strategy.remote_available:
            logger.warning(UNAVAILABLE_ENDPOINT_MESSAGE.format(table=item.table_name))
            await self.session.queue.ack(item.id)
            if item.operation != QueueOperation.DELETE.value:
                await self.session.store.reset_pending(item.table_name, item.record_id)
            return False

        if item.operation == QueueOperation.DELETE.value:
            await self._push_delete(item)
        else:
            await self._push_upsert(item, strategy)
        return True

    async def _push_upsert(self, item: QueueItem, strategy: TableStrategy) -> None:
        store = self.session.store
        row = await store.get_row(item.table_name, item.record_id)
        if row is None:
            raise RecordNotFoundError(item.table_name, item.record_id)

        remote_id = row.get("remote_id")
        if not remote_id:
            remote_id = str(uuid.uuid4())
            await store.assign_remote_id(item.table_name, item.record_id, remote_id)
        record = strategy.to_remote_schema(row, remote_id, self.session.user_id, self.session.cipher)
        await self.remote.upsert(item.table_name, record)
        await store.mark_synced(item.table_name, item.record_id, remote_id)
        await self.session.queue.ack(item.id)
        logger.debug(f"Pushed {_label(item)} as {remote_id}")

    async def _push_delete(self, item: QueueItem) -> None:
        if item.remote_id is None:
            # Never reached the backend; nothing to delete remotely
            logger.debug(f"Dropping delete of unsynced {_label(item)}")
        else:
            await self.remote.delete(item.table_name, item.remote_id, self.session.user_id)
        await self.session.queue.ack(item.id)

    async def _record_failure(
        self, item: QueueItem, error: Exception, result: SyncResult, permanent: bool = False
    ) -> None:
        message = str(error)
        result.failed += 1
        result.errors.append(f"{_label(item)}: {message}")
        try:
            retry_count = await self.session.queue.nack(
                item.id, message, max_retries=self.max_retries, permanent=permanent
            )
        except StorageError as e:
            logger.error(f"Could not record failure for {_label(item)}: {e}")
            return
        logger.warning(
            f"Failed to push {_label(item)}: {message} (retry {retry_count}/{self.max_retries})"
        )


def _label(item: QueueItem) -> str:
    return f"{item.table_name}/{item.record_id}"
