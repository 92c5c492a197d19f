"""Sponsor/sponsee linking over out-of-band payloads."""

from .codec import ConfirmationPayload, InvitePayload, decode_confirmation, decode_invite
from .handshake import INVITE_VALIDITY, SponsorHandshake

__all__ = [
    "ConfirmationPayload",
    "INVITE_VALIDITY",
    "InvitePayload",
    "SponsorHandshake",
    "decode_confirmation",
    "decode_invite",
]
