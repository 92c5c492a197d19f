"""Secure key storage backends.

Keys are stored as short strings under a name. A keystore that cannot gate
reads behind user authentication raises ``KeystoreCapabilityError`` when
asked to, so callers can fall back to ungated storage explicitly.
"""

import logging
import os
import re
from pathlib import Path
from typing import Dict, Optional, Protocol, Set, runtime_checkable

from companion.config import get_companion_home
from companion.errors import CryptoError, KeystoreCapabilityError

logger = logging.getLogger(__name__)

_KEY_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def _validate_key_name(name: str) -> str:
    if not name or not _KEY_NAME_RE.match(name) or name in (".", ".."):
        raise CryptoError(f"Invalid key name: {name!r}")
    return name


@runtime_checkable
class KeyStore(Protocol):
    """Named secret storage."""

    def get(self, name: str) -> Optional[str]: ...

    def set(self, name: str, value: str, require_authentication: bool = False) -> None: ...

    def delete(self, name: str) -> None: ...


class MemoryKeyStore:
    """In-process keystore for tests and ephemeral sessions."""

    def __init__(self, supports_authentication: bool = True):
        self.supports_authentication = supports_authentication
        self._values: Dict[str, str] = {}
        self.authenticated: Set[str] = set()

    def get(self, name: str) -> Optional[str]:
        return self._values.get(_validate_key_name(name))

    def set(self, name: str, value: str, require_authentication: bool = False) -> None:
        _validate_key_name(name)
        if require_authentication and not self.supports_authentication:
            raise KeystoreCapabilityError("Keystore cannot require user authentication")
        self._values[name] = value
        if require_authentication:
            self.authenticated.add(name)
        else:
            self.authenticated.discard(name)

    def delete(self, name: str) -> None:
        self._values.pop(_validate_key_name(name), None)
        self.authenticated.discard(name)


class FileKeyStore:
    """Keys stored as owner-only files under ``<home>/keys``.

    Files are written with mode 0600 inside a 0700 directory. There is no
    way to gate file reads on user presence, so requests for authenticated
    storage are refused.
    """

    def __init__(self, key_dir: Optional[Path] = None):
        self.key_dir = Path(key_dir) if key_dir else get_companion_home() / "keys"

    def _path(self, name: str) -> Path:
        return self.key_dir / f"{_validate_key_name(name)}.key"

    def get(self, name: str) -> Optional[str]:
        path = self._path(name)
        if not path.exists():
            return None
        try:
            return path.read_text().strip() or None
        except OSError as e:
            raise CryptoError(f"Failed to read key {name}: {e}") from e

    def set(self, name: str, value: str, require_authentication: bool = False) -> None:
        if require_authentication:
            raise KeystoreCapabilityError("File keystore cannot require user authentication")
        path = self._path(name)
        try:
            self.key_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(self.key_dir, 0o700)
            # Create with restrictive permissions before writing the secret
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                f.write(value)
            os.chmod(path, 0o600)
        except OSError as e:
            raise CryptoError(f"Failed to store key {name}: {e}") from e
        logger.debug(f"Stored key {name} in {self.key_dir}")

    def delete(self, name: str) -> None:
        path = self._path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise CryptoError(f"Failed to delete key {name}: {e}") from e
        logger.info(f"Deleted key {name}")
