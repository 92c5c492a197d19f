"""Wire format for sponsor handshake payloads.

Payloads travel by copy/paste, text message or email, so they are plain
ASCII: ``<PREFIX>:<base64url(json)>``. The JSON body carries a version
``v`` and a checksum over the rest of the body; anything that does not
decode cleanly raises ``ProtocolError``.
"""

import base64
import binascii
import hashlib
import json
import re
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from companion.errors import ProtocolError

INVITE_PREFIX = "RCINVITE"
CONFIRM_PREFIX = "RCCONFIRM"
PAYLOAD_VERSION = 1

# No 0/O or 1/I
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6
CODE_PREFIX = "RC-"
_CODE_RE = re.compile(rf"^{CODE_PREFIX}[{CODE_ALPHABET}]{{{CODE_LENGTH}}}$")
MAX_NAME_LENGTH = 100
MAX_PAYLOAD_LENGTH = 4096


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def generate_invite_code() -> str:
    return CODE_PREFIX + "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def is_valid_code(code: str) -> bool:
    return bool(_CODE_RE.match(code or ""))


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    v: int = PAYLOAD_VERSION
    code: str
    public_key: str
    checksum: str = ""

    @field_validator("code")
    @classmethod
    def _check_code(cls, value: str) -> str:
        if not is_valid_code(value):
            raise ValueError("invalid invite code")
        return value


class InvitePayload(_Payload):
    """Sent by the sponsee to a prospective sponsor."""

    sponsee_name: Optional[str] = None
    created_at: datetime
    expires_at: datetime

    @field_validator("created_at", "expires_at")
    @classmethod
    def _check_time(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("sponsee_name")
    @classmethod
    def _check_name(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and len(value) > MAX_NAME_LENGTH:
            raise ValueError("name too long")
        return value


class ConfirmationPayload(_Payload):
    """Returned by the sponsor to finish the link."""

    sponsor_name: Optional[str] = None
    confirmed_at: datetime

    @field_validator("confirmed_at")
    @classmethod
    def _check_time(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("sponsor_name")
    @classmethod
    def _check_name(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and len(value) > MAX_NAME_LENGTH:
            raise ValueError("name too long")
        return value


P = TypeVar("P", bound=_Payload)


def _canonical(body: Dict[str, Any]) -> bytes:
    return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _checksum(body: Dict[str, Any]) -> str:
    return hashlib.sha256(_canonical(body)).hexdigest()[:16]


def encode_payload(prefix: str, payload: _Payload) -> str:
    body = payload.model_dump(mode="json", exclude={"checksum"})
    body["checksum"] = _checksum(body)
    encoded = base64.urlsafe_b64encode(_canonical(body)).decode("ascii")
    return f"{prefix}:{encoded}"


def decode_payload(prefix: str, value: str, model: Type[P]) -> P:
    """Parse and verify a payload string.

    Raises:
        ProtocolError: Wrong prefix, oversized or bad encoding, unknown
            version, checksum mismatch or invalid fields
    """
    if not isinstance(value, str):
        raise ProtocolError(f"Expected {prefix} payload")
    value = value.strip()
    if not value.startswith(f"{prefix}:"):
        raise ProtocolError(f"Expected {prefix} payload")
    if len(value) > MAX_PAYLOAD_LENGTH:
        raise ProtocolError(f"{prefix} payload too large")

    raw = value[len(prefix) + 1 :]
    try:
        decoded = base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))
        body = json.loads(decoded.decode("utf-8"))
    except (binascii.Error, ValueError, RecursionError) as e:
        raise ProtocolError(f"Malformed {prefix} payload") from e
    if not isinstance(body, dict):
        raise ProtocolError(f"Malformed {prefix} payload")

    version = body.get("v")
    if version != PAYLOAD_VERSION:
        raise ProtocolError(f"Unsupported {prefix} payload version: {version}")

    checksum = body.pop("checksum", None)
    if not isinstance(checksum, str) or checksum != _checksum(body):
        raise ProtocolError(f"{prefix} payload checksum mismatch")

    try:
        return model.model_validate({**body, "checksum": checksum})
    except ValidationError as e:
        raise ProtocolError(f"Invalid {prefix} payload: {e.error_count()} field error(s)") from e


def encode_invite(payload: InvitePayload) -> str:
    return encode_payload(INVITE_PREFIX, payload)


def decode_invite(value: str) -> InvitePayload:
    return decode_payload(INVITE_PREFIX, value, InvitePayload)


def encode_confirmation(payload: ConfirmationPayload) -> str:
    return encode_payload(CONFIRM_PREFIX, payload)


def decode_confirmation(value: str) -> ConfirmationPayload:
    return decode_payload(CONFIRM_PREFIX, value, ConfirmationPayload)
