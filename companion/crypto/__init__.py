"""At-rest encryption for sensitive record fields."""

from .cipher import KEY_NAME, PBKDF2_ITERATIONS, EncryptionService, derive_key
from .envelope import CurrentEnvelope, LegacyEnvelope, decode_envelope, is_legacy
from .keystore import FileKeyStore, KeyStore, MemoryKeyStore

__all__ = [
    "CurrentEnvelope",
    "EncryptionService",
    "FileKeyStore",
    "KEY_NAME",
    "KeyStore",
    "LegacyEnvelope",
    "MemoryKeyStore",
    "PBKDF2_ITERATIONS",
    "decode_envelope",
    "derive_key",
    "is_legacy",
]
