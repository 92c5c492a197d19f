"""Per-login session context.

Created on login and disposed on logout. Anything that needs "the current
user" receives the session instead of reading global state.
"""

import logging

from companion.crypto.cipher import EncryptionService
from companion.storage.queue import SyncQueue
from companion.storage.records import RecordRepository
from companion.storage.sqlite import LocalStore

logger = logging.getLogger(__name__)


class SessionContext:
    """The signed-in user plus the local resources bound to them."""

    def __init__(self, user_id: str, store: LocalStore, queue: SyncQueue, cipher: EncryptionService):
        if not user_id:
            raise ValueError("user_id is required")
        self.user_id = user_id
        self.store = store
        self.queue = queue
        self.cipher = cipher
        self._active = True
        self._records = RecordRepository(store, cipher, user_id)

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def records(self) -> RecordRepository:
        return self._records

    def dispose(self) -> None:
        if self._active:
            self._active = False
            logger.debug(f"Session for {self.user_id} disposed")
