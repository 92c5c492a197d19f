"""Field encryption service.

Sensitive record fields are encrypted with AES-256-GCM under a single
per-device key. The key is 32 random bytes, stored hex-encoded in a
``KeyStore``. Where no secure keystore exists the key can instead be
derived from a password with PBKDF2 and held in memory for the session.
"""

import logging
import os
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from companion.errors import CryptoError, KeystoreCapabilityError

from .envelope import (
    IV_LENGTH,
    CurrentEnvelope,
    LegacyEnvelope,
    decode_envelope,
    encode_current,
    xor_transform,
)
from .keystore import KeyStore

logger = logging.getLogger(__name__)

KEY_NAME = "app_encryption_key"
SALT_NAME = "app_encryption_salt"
KEY_BYTES = 32
SALT_BYTES = 16
PBKDF2_ITERATIONS = 100_000


def derive_key(password: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """PBKDF2-HMAC-SHA256 password derivation."""
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_BYTES, salt=salt, iterations=iterations)
    return kdf.derive(password.encode("utf-8"))


class EncryptionService:
    """Encrypts and decrypts record fields as envelope strings."""

    def __init__(self, keystore: KeyStore):
        self._keystore = keystore
        self._session_key: Optional[bytes] = None

    @property
    def keystore(self) -> KeyStore:
        return self._keystore

    # === Key management ===

    def initialize_key(self) -> bool:
        """Create the device key if none exists.

        Authenticated storage is tried first; a keystore that cannot gate
        access gets the key ungated.

        Returns:
            True if a new key was created
        """
        if self._keystore.get(KEY_NAME):
            return False

        key_hex = secrets.token_bytes(KEY_BYTES).hex()
        try:
            self._keystore.set(KEY_NAME, key_hex, require_authentication=True)
        except KeystoreCapabilityError:
            logger.warning("Keystore cannot require authentication, storing key ungated")
            self._keystore.set(KEY_NAME, key_hex, require_authentication=False)
        logger.info("Generated new encryption key")
        return True

    def unlock_with_password(self, password: str) -> None:
        """Derive the session key from a password.

        The salt is created on first use and persisted; the derived key is
        never written anywhere.
        """
        if not password:
            raise CryptoError("Password must not be empty")
        salt_hex = self._keystore.get(SALT_NAME)
        if not salt_hex:
            salt_hex = secrets.token_bytes(SALT_BYTES).hex()
            self._keystore.set(SALT_NAME, salt_hex)
        self._session_key = derive_key(password, bytes.fromhex(salt_hex))

    def lock(self) -> None:
        self._session_key = None

    def has_key(self) -> bool:
        return self._session_key is not None or bool(self._keystore.get(KEY_NAME))

    def delete_key(self) -> None:
        """Remove the device key and any password salt. Existing envelopes become unreadable."""
        self._session_key = None
        self._keystore.delete(KEY_NAME)
        self._keystore.delete(SALT_NAME)
        logger.info("Encryption key deleted")

    def _key(self) -> bytes:
        if self._session_key is not None:
            return self._session_key
        key_hex = self._keystore.get(KEY_NAME)
        if not key_hex:
            raise CryptoError("Encryption key not available")
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as e:
            raise CryptoError("Stored encryption key is corrupt") from e
        if len(key) != KEY_BYTES:
            raise CryptoError("Stored encryption key has wrong length")
        return key

    # === Envelopes ===

    def encrypt(self, plaintext: str) -> str:
        """Encrypt text into a current envelope with a fresh random IV."""
        key = self._key()
        iv = os.urandom(IV_LENGTH)
        ciphertext = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        return encode_current(iv, ciphertext)

    def decrypt(self, envelope: str) -> str:
        """Decrypt a current or legacy envelope.

        Raises:
            CryptoError: Missing key, malformed envelope or failed authentication
        """
        parsed = decode_envelope(envelope)
        key = self._key()

        if isinstance(parsed, CurrentEnvelope):
            try:
                plaintext = AESGCM(key).decrypt(parsed.iv, parsed.ciphertext, None)
            except InvalidTag as e:
                raise CryptoError("Decryption failed: authentication tag mismatch") from e
        elif isinstance(parsed, LegacyEnvelope):
            xor_key = (key.hex() + parsed.salt).encode("ascii")
            plaintext = xor_transform(parsed.ciphertext, xor_key)
            try:
                return plaintext.decode("utf-8")
            except UnicodeDecodeError:
                # Older clients XORed char codes of a binary string: one byte per code unit
                return plaintext.decode("latin-1")
        else:  # pragma: no cover
            raise CryptoError("Unsupported envelope")

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CryptoError("Decryption produced invalid UTF-8") from e

    def needs_migration(self, envelope: str) -> bool:
        return isinstance(decode_envelope(envelope), LegacyEnvelope)

    def migrate_envelope(self, envelope: str) -> str:
        """Re-encrypt a legacy envelope in the current format.

        Current envelopes are returned unchanged.
        """
        if not self.needs_migration(envelope):
            return envelope
        return self.encrypt(self.decrypt(envelope))
