"""Encrypted field envelope format.

An envelope is a base64 string. The first decoded byte selects the layout:

- ``0x02``: current layout ``version || iv(12) || ciphertext || tag(16)``
  (AES-256-GCM)
- an ASCII hex digit: legacy layout ``salt_hex(32 chars) || xor_bytes``

Anything else is rejected. The envelope is decoded exactly once into one
of the two dataclasses below and callers dispatch on the type.
"""

import base64
import binascii
import string
from dataclasses import dataclass
from itertools import cycle
from typing import Union

from companion.errors import CryptoError

CURRENT_VERSION = 0x02
IV_LENGTH = 12
TAG_LENGTH = 16
LEGACY_SALT_LENGTH = 32

_HEX_BYTES = frozenset(string.hexdigits.encode("ascii"))


@dataclass(frozen=True)
class CurrentEnvelope:
    """AES-GCM envelope. ``ciphertext`` includes the trailing tag."""

    iv: bytes
    ciphertext: bytes


@dataclass(frozen=True)
class LegacyEnvelope:
    """Pre-AEAD envelope, XOR-obfuscated with ``key_hex + salt``."""

    salt: str
    ciphertext: bytes


Envelope = Union[CurrentEnvelope, LegacyEnvelope]


def encode_current(iv: bytes, ciphertext: bytes) -> str:
    """Serialize an AES-GCM result (ciphertext with tag appended)."""
    if len(iv) != IV_LENGTH:
        raise CryptoError(f"IV must be {IV_LENGTH} bytes")
    return base64.b64encode(bytes([CURRENT_VERSION]) + iv + ciphertext).decode("ascii")


def decode_envelope(envelope: str) -> Envelope:
    """Parse an envelope string.

    Raises:
        CryptoError: On invalid base64, truncated layout or unknown version byte
    """
    if not envelope:
        raise CryptoError("Malformed envelope: empty")
    try:
        raw = base64.b64decode(envelope, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CryptoError(f"Malformed envelope: {e}") from e
    if not raw:
        raise CryptoError("Malformed envelope: empty")

    first = raw[0]
    if first == CURRENT_VERSION:
        if len(raw) < 1 + IV_LENGTH + TAG_LENGTH:
            raise CryptoError("Malformed envelope: too short")
        return CurrentEnvelope(iv=raw[1 : 1 + IV_LENGTH], ciphertext=raw[1 + IV_LENGTH :])

    if first in _HEX_BYTES:
        salt = raw[:LEGACY_SALT_LENGTH]
        if len(salt) < LEGACY_SALT_LENGTH or not all(b in _HEX_BYTES for b in salt):
            raise CryptoError("Malformed legacy envelope: bad salt")
        return LegacyEnvelope(salt=salt.decode("ascii"), ciphertext=raw[LEGACY_SALT_LENGTH:])

    raise CryptoError(f"Unsupported envelope version: 0x{first:02x}")


def encode_legacy(salt: str, ciphertext: bytes) -> str:
    return base64.b64encode(salt.encode("ascii") + ciphertext).decode("ascii")


def xor_transform(data: bytes, key: bytes) -> bytes:
    """Repeating-key XOR. Applying it twice with the same key is a no-op."""
    if not key:
        raise CryptoError("XOR key must not be empty")
    return bytes(b ^ k for b, k in zip(data, cycle(key)))


def is_legacy(envelope: str) -> bool:
    """True if ``envelope`` parses as the legacy layout."""
    try:
        return isinstance(decode_envelope(envelope), LegacyEnvelope)
    except CryptoError:
        return False
