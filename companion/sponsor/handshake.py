"""Sponsor link handshake.

States (NoConnection is the absence of a row)::

    NoConnection -> InviteCreated -> ConnectionEstablished -> Removed

The sponsee creates an invite, the sponsor answers it with a confirmation,
and the sponsee confirms. Both sides exchange P-256 public keys through the
payloads and derive the same link key, whose fingerprint can be compared
in person.
"""

import base64
import hashlib
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from companion.crypto.keystore import KeyStore
from companion.errors import ProtocolError
from companion.storage.sqlite import LocalStore
from companion.types import ConnectionState, SponsorConnection, SponsorRole, parse_datetime

from .codec import (
    ConfirmationPayload,
    InvitePayload,
    decode_confirmation,
    decode_invite,
    encode_confirmation,
    encode_invite,
    generate_invite_code,
)

logger = logging.getLogger(__name__)

INVITE_VALIDITY = timedelta(days=7)
_MAX_CODE_ATTEMPTS = 10


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# === Key agreement ===


def _generate_private_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def _public_key_b64(private_key: ec.EllipticCurvePrivateKey) -> str:
    raw = private_key.public_key().public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
    )
    return base64.b64encode(raw).decode("ascii")


def _derive_link_key(private_key: ec.EllipticCurvePrivateKey, peer_public_b64: str, code: str) -> bytes:
    try:
        peer = ec.EllipticCurvePublicKey.from_encoded_point(
            ec.SECP256R1(), base64.b64decode(peer_public_b64, validate=True)
        )
    except ValueError as e:
        raise ProtocolError("Invalid public key in payload") from e
    shared = private_key.exchange(ec.ECDH(), peer)
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=f"recovery-companion sponsor link {code}".encode("ascii"),
    ).derive(shared)


def _private_key_name(connection_id: str) -> str:
    return f"sponsor_{connection_id}_private"


def _link_key_name(connection_id: str) -> str:
    return f"sponsor_{connection_id}_link"


# === Rows ===


def _row_to_connection(row: sqlite3.Row) -> SponsorConnection:
    return SponsorConnection(
        id=row["id"],
        role=SponsorRole(row["role"]),
        invite_code=row["invite_code"],
        state=ConnectionState(row["state"]),
        display_name=row["display_name"],
        peer_name=row["peer_name"],
        created_at=parse_datetime(row["created_at"]),
        updated_at=parse_datetime(row["updated_at"]),
        expires_at=parse_datetime(row["expires_at"]),
    )


def _insert_connection(conn: sqlite3.Connection, connection: SponsorConnection) -> None:
    conn.execute(
        """INSERT INTO sponsor_connections
           (id, role, invite_code, display_name, peer_name, state, created_at, updated_at, expires_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            connection.id,
            connection.role.value,
            connection.invite_code,
            connection.display_name,
            connection.peer_name,
            connection.state.value,
            connection.created_at.isoformat(),
            connection.updated_at.isoformat(),
            connection.expires_at.isoformat() if connection.expires_at else None,
        ),
    )


def _find_by_code(conn: sqlite3.Connection, code: str) -> List[SponsorConnection]:
    rows = conn.execute(
        "SELECT * FROM sponsor_connections WHERE invite_code = ? ORDER BY created_at",
        (code,),
    ).fetchall()
    return [_row_to_connection(r) for r in rows]


class SponsorHandshake:
    """Creates, answers and confirms sponsor invites.

    Args:
        store: Local store holding ``sponsor_connections``
        keystore: Where ephemeral private keys and link keys are kept
        clock: Returns the current UTC time (overridable for tests)
    """

    def __init__(
        self,
        store: LocalStore,
        keystore: KeyStore,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._keystore = keystore
        self._clock = clock or _utc_now

    async def create_invite(self, display_name: Optional[str] = None) -> Tuple[SponsorConnection, str]:
        """Start a link as the sponsee.

        Returns:
            (connection in InviteCreated state, ``RCINVITE:`` payload)
        """
        now = self._clock()
        private_key = _generate_private_key()
        connection = SponsorConnection(
            id=str(uuid.uuid4()),
            role=SponsorRole.SPONSEE,
            invite_code="",
            state=ConnectionState.INVITE_CREATED,
            display_name=display_name,
            created_at=now,
            updated_at=now,
            expires_at=now + INVITE_VALIDITY,
        )

        def _create(conn: sqlite3.Connection) -> str:
            for _ in range(_MAX_CODE_ATTEMPTS):
                code = generate_invite_code()
                if not _find_by_code(conn, code):
                    connection.invite_code = code
                    _insert_connection(conn, connection)
                    return code
            raise ProtocolError("Could not allocate a unique invite code")

        code = await self._store.run(_create)
        self._keystore.set(
            _private_key_name(connection.id),
            private_key.private_bytes(
                serialization.Encoding.DER,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            ).hex(),
        )

        payload = InvitePayload(
            code=code,
            public_key=_public_key_b64(private_key),
            sponsee_name=display_name,
            created_at=now,
            expires_at=connection.expires_at,
        )
        logger.info(f"Created sponsor invite {code}")
        return connection, encode_invite(payload)

    async def connect_as_sponsor(
        self, payload: str, display_name: Optional[str] = None
    ) -> Tuple[SponsorConnection, str]:
        """Accept an invite as the sponsor.

        Returns:
            (established connection, ``RCCONFIRM:`` payload for the sponsee)

        Raises:
            ProtocolError: Malformed or expired invite, or a code already used here
        """
        invite = decode_invite(payload)
        now = self._clock()
        if invite.expires_at <= now:
            raise ProtocolError(f"Invite {invite.code} has expired")

        private_key = _generate_private_key()
        link_key = _derive_link_key(private_key, invite.public_key, invite.code)
        connection = SponsorConnection(
            id=str(uuid.uuid4()),
            role=SponsorRole.SPONSOR,
            invite_code=invite.code,
            state=ConnectionState.CONNECTED,
            display_name=display_name,
            peer_name=invite.sponsee_name,
            created_at=now,
            updated_at=now,
        )

        def _connect(conn: sqlite3.Connection) -> None:
            used = [c for c in _find_by_code(conn, invite.code) if c.role == SponsorRole.SPONSOR]
            if any(c.state != ConnectionState.REMOVED for c in used):
                raise ProtocolError(f"Invite {invite.code} was already used")
            _insert_connection(conn, connection)

        await self._store.run(_connect)
        self._keystore.set(_link_key_name(connection.id), link_key.hex())

        confirmation = ConfirmationPayload(
            code=invite.code,
            public_key=_public_key_b64(private_key),
            sponsor_name=display_name,
            confirmed_at=now,
        )
        logger.info(f"Connected as sponsor via invite {invite.code}")
        return connection, encode_confirmation(confirmation)

    async def confirm_invite(self, payload: str) -> SponsorConnection:
        """Finish the link as the sponsee.

        Raises:
            ProtocolError: Malformed confirmation, or no open invite for its code
        """
        confirmation = decode_confirmation(payload)
        now = self._clock()

        def _pending(conn: sqlite3.Connection) -> Optional[SponsorConnection]:
            for c in _find_by_code(conn, confirmation.code):
                if c.role == SponsorRole.SPONSEE and c.state == ConnectionState.INVITE_CREATED:
                    return c
            return None

        connection = await self._store.run(_pending)
        if connection is None:
            raise ProtocolError(f"No open invite for code {confirmation.code}")
        if connection.expires_at and connection.expires_at <= now:
            raise ProtocolError(f"Invite {confirmation.code} has expired")

        private_hex = self._keystore.get(_private_key_name(connection.id))
        if not private_hex:
            raise ProtocolError(f"Key material for invite {confirmation.code} is missing")
        private_key = serialization.load_der_private_key(bytes.fromhex(private_hex), password=None)
        link_key = _derive_link_key(private_key, confirmation.public_key, confirmation.code)

        def _establish(conn: sqlite3.Connection) -> None:
            conn.execute(
                """UPDATE sponsor_connections
                   SET state = ?, peer_name = ?, updated_at = ?, expires_at = NULL
                   WHERE id = ?""",
                (ConnectionState.CONNECTED.value, confirmation.sponsor_name, now.isoformat(), connection.id),
            )

        await self._store.run(_establish)
        self._keystore.set(_link_key_name(connection.id), link_key.hex())
        self._keystore.delete(_private_key_name(connection.id))

        connection.state = ConnectionState.CONNECTED
        connection.peer_name = confirmation.sponsor_name
        connection.updated_at = now
        connection.expires_at = None
        logger.info(f"Sponsor link {confirmation.code} established")
        return connection

    async def remove_connection(self, connection_id: str) -> bool:
        """Mark a link removed and forget its keys. Returns False if unknown."""
        now = self._clock()

        def _remove(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                "UPDATE sponsor_connections SET state = ?, updated_at = ? WHERE id = ? AND state != ?",
                (
                    ConnectionState.REMOVED.value,
                    now.isoformat(),
                    connection_id,
                    ConnectionState.REMOVED.value,
                ),
            )
            return cursor.rowcount > 0

        removed = await self._store.run(_remove)
        if removed:
            self._keystore.delete(_private_key_name(connection_id))
            self._keystore.delete(_link_key_name(connection_id))
            logger.info(f"Removed sponsor connection {connection_id}")
        return removed

    async def forget_all_keys(self) -> int:
        """Delete the private and link keys of every known connection.

        Run before a local wipe; once the rows are gone the key names cannot
        be recovered. Returns the number of connections whose keys were dropped.
        """
        connections = await self.list_connections(include_removed=True)
        for connection in connections:
            self._keystore.delete(_private_key_name(connection.id))
            self._keystore.delete(_link_key_name(connection.id))
        if connections:
            logger.info(f"Forgot keys for {len(connections)} sponsor connection(s)")
        return len(connections)

    async def get_connection(self, connection_id: str) -> Optional[SponsorConnection]:
        def _get(conn: sqlite3.Connection) -> Optional[SponsorConnection]:
            row = conn.execute(
                "SELECT * FROM sponsor_connections WHERE id = ?", (connection_id,)
            ).fetchone()
            return _row_to_connection(row) if row else None

        return await self._store.run(_get)

    async def list_connections(self, include_removed: bool = False) -> List[SponsorConnection]:
        def _list(conn: sqlite3.Connection) -> List[SponsorConnection]:
            if include_removed:
                rows = conn.execute(
                    "SELECT * FROM sponsor_connections ORDER BY created_at DESC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM sponsor_connections WHERE state != ? ORDER BY created_at DESC",
                    (ConnectionState.REMOVED.value,),
                ).fetchall()
            return [_row_to_connection(r) for r in rows]

        return await self._store.run(_list)

    def link_fingerprint(self, connection_id: str) -> Optional[str]:
        """Short fingerprint of the link key, identical on both sides."""
        key_hex = self._keystore.get(_link_key_name(connection_id))
        if not key_hex:
            return None
        digest = hashlib.sha256(bytes.fromhex(key_hex)).hexdigest()[:16].upper()
        return " ".join(digest[i : i + 4] for i in range(0, len(digest), 4))
