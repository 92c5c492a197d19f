"""Shared helper functions for CLI commands."""

import json
import re
from dataclasses import dataclass
from typing import Any, Optional

from companion.config import Settings, load_credentials
from companion.crypto.cipher import EncryptionService
from companion.crypto.keystore import FileKeyStore
from companion.session import SessionContext
from companion.storage.queue import SyncQueue
from companion.storage.sqlite import LocalStore

LOCAL_USER_ID = "local"


def validate_input(value: str, field_name: str, max_length: int = 1000) -> str:
    """Validate and sanitize CLI inputs."""
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string")

    if len(value) > max_length:
        raise ValueError(f"{field_name} too long (max {max_length} characters)")

    # Remove null bytes and control characters except newlines
    return re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", value)


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    print(json.dumps(data, indent=2, default=str))


@dataclass
class CliContext:
    """Local resources wired up for one CLI invocation."""

    settings: Settings
    store: LocalStore
    keystore: FileKeyStore
    cipher: EncryptionService
    queue: SyncQueue
    credentials: Optional[dict]

    @property
    def user_id(self) -> str:
        if self.credentials and self.credentials.get("user_id"):
            return self.credentials["user_id"]
        return self.settings.user_id or LOCAL_USER_ID

    def session(self) -> SessionContext:
        return SessionContext(self.user_id, self.store, self.queue, self.cipher)


async def open_context(settings: Settings) -> CliContext:
    """Open the local store (migrating it if needed) and the keystore."""
    store = LocalStore(settings.db_path)
    await store.init()
    keystore = FileKeyStore(settings.key_dir)
    return CliContext(
        settings=settings,
        store=store,
        keystore=keystore,
        cipher=EncryptionService(keystore),
        queue=SyncQueue(store, max_retries=settings.max_retries),
        credentials=load_credentials(settings),
    )
