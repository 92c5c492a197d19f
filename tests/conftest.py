"""
Pytest fixtures and test configuration for Recovery Companion tests.
"""

import pytest
import pytest_asyncio

from companion.config import get_settings
from companion.crypto.cipher import EncryptionService
from companion.crypto.keystore import MemoryKeyStore
from companion.session import SessionContext
from companion.storage.queue import SyncQueue
from companion.storage.sqlite import LocalStore
from companion.sync.engine import SyncEngine
from companion.testing import FakeRemote, ManualScheduler

USER_ID = "user-123"


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Point COMPANION_HOME at a temp dir and drop cached settings."""
    home = tmp_path / "home"
    monkeypatch.setenv("COMPANION_HOME", str(home))
    for var in ("COMPANION_BACKEND_URL", "COMPANION_API_KEY", "COMPANION_AUTH_TOKEN", "COMPANION_USER_ID"):
        monkeypatch.delenv(var, raising=False)
    get_settings.cache_clear()
    yield home
    get_settings.cache_clear()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "companion.db"


@pytest_asyncio.fixture
async def store(db_path):
    """An initialized local store."""
    store = LocalStore(db_path)
    await store.init()
    return store


@pytest.fixture
def keystore():
    return MemoryKeyStore()


@pytest.fixture
def cipher(keystore):
    """Encryption service with a device key."""
    service = EncryptionService(keystore)
    service.initialize_key()
    return service


@pytest.fixture
def queue(store):
    return SyncQueue(store)


@pytest.fixture
def session(store, queue, cipher):
    return SessionContext(USER_ID, store, queue, cipher)


@pytest.fixture
def repo(session):
    return session.records


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def engine(session, remote, scheduler):
    return SyncEngine(session, remote, scheduler=scheduler)
