"""Tests for sponsor invite payloads and the link handshake.

Tests:
- Full invite -> accept -> confirm flow with matching fingerprints
- Payload validation (prefix, size, encoding, version, checksum, fields)
- Expired and reused invites
- Removal and key cleanup
"""

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from companion.crypto.keystore import MemoryKeyStore
from companion.errors import ProtocolError
from companion.sponsor import codec
from companion.sponsor.codec import (
    CONFIRM_PREFIX,
    INVITE_PREFIX,
    MAX_NAME_LENGTH,
    MAX_PAYLOAD_LENGTH,
    InvitePayload,
    _checksum,
    decode_confirmation,
    decode_invite,
    encode_invite,
    generate_invite_code,
    is_valid_code,
)
from companion.sponsor.handshake import INVITE_VALIDITY, SponsorHandshake
from companion.storage.sqlite import LocalStore
from companion.types import ConnectionState, SponsorRole


def _reencode(payload: str, prefix: str, mutate, fix_checksum: bool = False) -> str:
    raw = payload.split(":", 1)[1]
    body = json.loads(base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4)))
    mutate(body)
    if fix_checksum:
        body.pop("checksum", None)
        body["checksum"] = _checksum(body)
    encoded = base64.urlsafe_b64encode(json.dumps(body).encode("utf-8")).decode("ascii")
    return f"{prefix}:{encoded}"


@pytest_asyncio.fixture
async def sponsor_store(tmp_path):
    store = LocalStore(tmp_path / "sponsor-device.db")
    await store.init()
    return store


@pytest.fixture
def sponsee(store):
    return SponsorHandshake(store, MemoryKeyStore())


@pytest.fixture
def sponsor(sponsor_store):
    return SponsorHandshake(sponsor_store, MemoryKeyStore())


class TestInviteCodes:
    def test_generated_codes_are_valid(self):
        for _ in range(50):
            code = generate_invite_code()
            assert is_valid_code(code)
            assert code.startswith("RC-")
            assert len(code) == 9

    def test_ambiguous_characters_rejected(self):
        assert not is_valid_code("RC-ABC0O1")
        assert not is_valid_code("ABCDEF")
        assert not is_valid_code("")


class TestHandshakeFlow:
    """Sponsee invites, sponsor accepts, sponsee confirms."""

    @pytest.mark.asyncio
    async def test_full_flow(self, sponsee, sponsor):
        invite_conn, invite = await sponsee.create_invite(display_name="Sam")
        assert invite.startswith(f"{INVITE_PREFIX}:")
        assert invite_conn.state == ConnectionState.INVITE_CREATED
        assert invite_conn.role == SponsorRole.SPONSEE

        sponsor_conn, confirmation = await sponsor.connect_as_sponsor(invite, display_name="Alex")
        assert confirmation.startswith(f"{CONFIRM_PREFIX}:")
        assert sponsor_conn.state == ConnectionState.CONNECTED
        assert sponsor_conn.role == SponsorRole.SPONSOR
        assert sponsor_conn.peer_name == "Sam"
        assert sponsor_conn.invite_code == invite_conn.invite_code

        confirmed = await sponsee.confirm_invite(confirmation)
        assert confirmed.id == invite_conn.id
        assert confirmed.state == ConnectionState.CONNECTED
        assert confirmed.peer_name == "Alex"

        stored = await sponsee.get_connection(invite_conn.id)
        assert stored.state == ConnectionState.CONNECTED
        assert stored.expires_at is None

    @pytest.mark.asyncio
    async def test_fingerprints_match(self, sponsee, sponsor):
        invite_conn, invite = await sponsee.create_invite()
        sponsor_conn, confirmation = await sponsor.connect_as_sponsor(invite)
        await sponsee.confirm_invite(confirmation)

        sponsee_print = sponsee.link_fingerprint(invite_conn.id)
        sponsor_print = sponsor.link_fingerprint(sponsor_conn.id)
        assert sponsee_print is not None
        assert sponsee_print == sponsor_print
        assert len(sponsee_print.replace(" ", "")) == 16

    @pytest.mark.asyncio
    async def test_no_fingerprint_before_confirmation(self, sponsee):
        invite_conn, _ = await sponsee.create_invite()
        assert sponsee.link_fingerprint(invite_conn.id) is None

    @pytest.mark.asyncio
    async def test_invite_expires_after_seven_days(self, sponsee):
        invite_conn, invite = await sponsee.create_invite()
        decoded = decode_invite(invite)
        assert decoded.expires_at - decoded.created_at == INVITE_VALIDITY
        assert decoded.code == invite_conn.invite_code

    @pytest.mark.asyncio
    async def test_confirm_twice_fails(self, sponsee, sponsor):
        _, invite = await sponsee.create_invite()
        _, confirmation = await sponsor.connect_as_sponsor(invite)
        await sponsee.confirm_invite(confirmation)

        with pytest.raises(ProtocolError, match="No open invite"):
            await sponsee.confirm_invite(confirmation)


class TestRejections:
    """Payloads that must not establish a link."""

    @pytest.mark.asyncio
    async def test_expired_invite(self, sponsee, sponsor_store):
        _, invite = await sponsee.create_invite()
        later = datetime.now(timezone.utc) + timedelta(days=8)
        sponsor = SponsorHandshake(sponsor_store, MemoryKeyStore(), clock=lambda: later)

        with pytest.raises(ProtocolError, match="expired"):
            await sponsor.connect_as_sponsor(invite)
        assert await sponsor.list_connections() == []

    @pytest.mark.asyncio
    async def test_invite_used_twice(self, sponsee, sponsor):
        _, invite = await sponsee.create_invite()
        await sponsor.connect_as_sponsor(invite)

        with pytest.raises(ProtocolError, match="already used"):
            await sponsor.connect_as_sponsor(invite)

    @pytest.mark.asyncio
    async def test_confirmation_for_unknown_code(self, sponsee, sponsor, tmp_path):
        other_store = LocalStore(tmp_path / "other-sponsee.db")
        await other_store.init()
        other = SponsorHandshake(other_store, MemoryKeyStore())
        _, invite = await other.create_invite()
        _, confirmation = await sponsor.connect_as_sponsor(invite)

        with pytest.raises(ProtocolError, match="No open invite"):
            await sponsee.confirm_invite(confirmation)

    @pytest.mark.asyncio
    async def test_tampered_payload(self, sponsee, sponsor):
        _, invite = await sponsee.create_invite(display_name="Sam")
        tampered = _reencode(invite, INVITE_PREFIX, lambda b: b.update(sponsee_name="Mallory"))

        with pytest.raises(ProtocolError, match="checksum mismatch"):
            await sponsor.connect_as_sponsor(tampered)

    @pytest.mark.asyncio
    async def test_wrong_prefix(self, sponsee, sponsor):
        _, invite = await sponsee.create_invite()
        _, confirmation = await sponsor.connect_as_sponsor(invite)

        with pytest.raises(ProtocolError, match=f"Expected {INVITE_PREFIX} payload"):
            await sponsor.connect_as_sponsor(confirmation)
        with pytest.raises(ProtocolError, match=f"Expected {CONFIRM_PREFIX} payload"):
            await sponsee.confirm_invite(invite)

    @pytest.mark.asyncio
    async def test_unsupported_version(self, sponsee, sponsor):
        _, invite = await sponsee.create_invite()
        future = _reencode(invite, INVITE_PREFIX, lambda b: b.update(v=2), fix_checksum=True)

        with pytest.raises(ProtocolError, match="Unsupported RCINVITE payload version: 2"):
            await sponsor.connect_as_sponsor(future)

    @pytest.mark.asyncio
    async def test_invalid_public_key(self, sponsee, sponsor):
        _, invite = await sponsee.create_invite()
        bad_key = _reencode(
            invite,
            INVITE_PREFIX,
            lambda b: b.update(public_key=base64.b64encode(b"\x04" + b"\x01" * 64).decode()),
            fix_checksum=True,
        )

        with pytest.raises(ProtocolError, match="Invalid public key"):
            await sponsor.connect_as_sponsor(bad_key)

    def test_garbage(self):
        with pytest.raises(ProtocolError, match="Malformed"):
            decode_invite(f"{INVITE_PREFIX}:!!!not-base64-json!!!")

    def test_non_object_body(self):
        encoded = base64.urlsafe_b64encode(b"[1, 2, 3]").decode("ascii")
        with pytest.raises(ProtocolError, match="Malformed"):
            decode_invite(f"{INVITE_PREFIX}:{encoded}")

    def test_oversized_payload(self):
        encoded = base64.urlsafe_b64encode(b"{" + b" " * 5000 + b"}").decode("ascii")
        with pytest.raises(ProtocolError, match="too large"):
            decode_invite(f"{INVITE_PREFIX}:{encoded}")

    def test_deeply_nested_body(self):
        encoded = base64.urlsafe_b64encode(b"[" * 3000).decode("ascii")
        with pytest.raises(ProtocolError, match="Malformed"):
            decode_invite(f"{INVITE_PREFIX}:{encoded}")

    def test_recursion_error_becomes_protocol_error(self, monkeypatch):
        def too_deep(*args, **kwargs):
            raise RecursionError("maximum recursion depth exceeded")

        monkeypatch.setattr(codec.json, "loads", too_deep)
        encoded = base64.urlsafe_b64encode(b"[[[]]]").decode("ascii")
        with pytest.raises(ProtocolError, match="Malformed"):
            decode_invite(f"{INVITE_PREFIX}:{encoded}")

    def test_longest_name_fits(self):
        now = datetime.now(timezone.utc)
        payload = encode_invite(
            InvitePayload(
                code="RC-ABCDEF",
                public_key=base64.b64encode(b"\x04" + b"\x01" * 64).decode(),
                sponsee_name="\U0001f600" * MAX_NAME_LENGTH,
                created_at=now,
                expires_at=now,
            )
        )
        assert len(payload) <= MAX_PAYLOAD_LENGTH
        assert decode_invite(payload).sponsee_name == "\U0001f600" * MAX_NAME_LENGTH

    def test_not_a_string(self):
        with pytest.raises(ProtocolError):
            decode_confirmation(None)

    def test_invalid_fields(self):
        now = datetime.now(timezone.utc)
        payload = encode_invite(
            InvitePayload(code="RC-ABCDEF", public_key="x", created_at=now, expires_at=now)
        )
        broken = _reencode(payload, INVITE_PREFIX, lambda b: b.update(code="nope"), fix_checksum=True)

        with pytest.raises(ProtocolError, match="Invalid RCINVITE payload"):
            decode_invite(broken)

    def test_unknown_field(self):
        now = datetime.now(timezone.utc)
        payload = encode_invite(
            InvitePayload(code="RC-ABCDEF", public_key="x", created_at=now, expires_at=now)
        )
        extra = _reencode(payload, INVITE_PREFIX, lambda b: b.update(admin=True), fix_checksum=True)

        with pytest.raises(ProtocolError, match="Invalid RCINVITE payload"):
            decode_invite(extra)


class TestRemoval:
    @pytest.mark.asyncio
    async def test_remove_connection(self, sponsee, sponsor):
        invite_conn, invite = await sponsee.create_invite()
        _, confirmation = await sponsor.connect_as_sponsor(invite)
        await sponsee.confirm_invite(confirmation)

        assert await sponsee.remove_connection(invite_conn.id) is True
        assert sponsee.link_fingerprint(invite_conn.id) is None
        assert await sponsee.list_connections() == []

        everything = await sponsee.list_connections(include_removed=True)
        assert [c.state for c in everything] == [ConnectionState.REMOVED]

        assert await sponsee.remove_connection(invite_conn.id) is False

    @pytest.mark.asyncio
    async def test_remove_unknown(self, sponsee):
        assert await sponsee.remove_connection("missing") is False

    @pytest.mark.asyncio
    async def test_removed_sponsor_link_can_be_recreated(self, sponsee, sponsor):
        _, invite = await sponsee.create_invite()
        first, _ = await sponsor.connect_as_sponsor(invite)
        await sponsor.remove_connection(first.id)

        second, _ = await sponsor.connect_as_sponsor(invite)
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_wipe_clears_connections(self, sponsee, store):
        await sponsee.create_invite()
        await store.wipe()
        assert await sponsee.list_connections(include_removed=True) == []

    @pytest.mark.asyncio
    async def test_forget_all_keys(self, sponsee, sponsor):
        pending, _ = await sponsee.create_invite()
        linked, invite = await sponsee.create_invite()
        _, confirmation = await sponsor.connect_as_sponsor(invite)
        await sponsee.confirm_invite(confirmation)
        assert sponsee.link_fingerprint(linked.id) is not None

        assert await sponsee.forget_all_keys() == 2

        assert sponsee.link_fingerprint(linked.id) is None
        assert sponsee._keystore.get(f"sponsor_{pending.id}_private") is None
