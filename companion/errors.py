"""Error taxonomy for Recovery Companion.

Every failure the sync core can surface is one of four kinds:

- StorageError: local SQLite I/O
- RemoteError: network or backend failure
- CryptoError: missing key, decrypt/verify failure, unsupported envelope
- ProtocolError: unknown queue table, malformed handshake payload

Per-item failures during a sync run are converted into queue retries;
only the message text travels into SyncResult.errors and the log.
"""

from typing import Optional


class CompanionError(Exception):
    """Base exception for all Recovery Companion errors."""

    pass


class StorageError(CompanionError):
    """Local store read/write failed."""

    pass


class RecordNotFoundError(StorageError):
    """A queued record no longer exists in the local store."""

    def __init__(self, table: str, record_id: str):
        self.table = table
        self.record_id = record_id
        super().__init__(f"Record not found: {table}/{record_id}")


class RemoteError(CompanionError):
    """The remote backend could not be reached or rejected the request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class CryptoError(CompanionError):
    """Encryption, decryption or key management failed."""

    pass


class KeystoreCapabilityError(CryptoError):
    """The keystore cannot provide the requested protection level."""

    pass


class ProtocolError(CompanionError):
    """Input did not match an expected wire or queue protocol."""

    pass
