"""
Recovery Companion CLI - local store, sync and sponsor links.

Usage:
    companion init [--json]
    companion status [--json]
    companion sync [--limit N] [--json]
    companion dead-letters [--limit N] [--json]
    companion migrate-envelopes [--json]
    companion wipe --yes [--delete-key]
    companion sponsor invite [--name NAME]
    companion sponsor accept PAYLOAD [--name NAME]
    companion sponsor confirm PAYLOAD
    companion sponsor list [--all] [--json]
    companion sponsor remove ID
"""

import argparse
import asyncio
import logging
import sys

from companion.config import get_settings
from companion.errors import CompanionError

from .commands import (
    cmd_dead_letters,
    cmd_init,
    cmd_migrate_envelopes,
    cmd_sponsor,
    cmd_status,
    cmd_sync,
    cmd_wipe,
)
from .commands.helpers import open_context

logger = logging.getLogger(__name__)

COMMANDS = {
    "init": cmd_init,
    "status": cmd_status,
    "sync": cmd_sync,
    "dead-letters": cmd_dead_letters,
    "migrate-envelopes": cmd_migrate_envelopes,
    "wipe": cmd_wipe,
    "sponsor": cmd_sponsor,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="companion",
        description="Offline-first encrypted recovery journal: local store and sync",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_init = subparsers.add_parser("init", help="Create the local database and encryption key")
    p_init.add_argument("--json", "-j", action="store_true")

    p_status = subparsers.add_parser("status", help="Show local store and queue status")
    p_status.add_argument("--json", "-j", action="store_true")

    p_sync = subparsers.add_parser("sync", help="Push queued changes to the backend")
    p_sync.add_argument("--limit", "-l", type=int, default=None,
                        help="Maximum changes to push (default: from settings)")
    p_sync.add_argument("--json", "-j", action="store_true")

    p_dead = subparsers.add_parser("dead-letters", help="List changes that stopped retrying")
    p_dead.add_argument("--limit", "-l", type=int, default=100)
    p_dead.add_argument("--json", "-j", action="store_true")

    p_migrate = subparsers.add_parser("migrate-envelopes",
                                      help="Re-encrypt legacy field envelopes")
    p_migrate.add_argument("--json", "-j", action="store_true")

    p_wipe = subparsers.add_parser("wipe", help="Delete all local data")
    p_wipe.add_argument("--yes", action="store_true", help="Confirm the wipe")
    p_wipe.add_argument("--delete-key", dest="delete_key", action="store_true",
                        help="Also delete the encryption key")

    p_sponsor = subparsers.add_parser("sponsor", help="Sponsor links")
    sponsor_sub = p_sponsor.add_subparsers(dest="sponsor_action", required=True)

    sponsor_invite = sponsor_sub.add_parser("invite", help="Create an invite for your sponsor")
    sponsor_invite.add_argument("--name", "-n", help="Name to share")

    sponsor_accept = sponsor_sub.add_parser("accept", help="Accept a sponsee's invite")
    sponsor_accept.add_argument("payload", help="RCINVITE payload")
    sponsor_accept.add_argument("--name", "-n", help="Name to share")

    sponsor_confirm = sponsor_sub.add_parser("confirm", help="Confirm your sponsor's reply")
    sponsor_confirm.add_argument("payload", help="RCCONFIRM payload")

    sponsor_list = sponsor_sub.add_parser("list", help="List sponsor connections")
    sponsor_list.add_argument("--all", "-a", action="store_true", help="Include removed")
    sponsor_list.add_argument("--json", "-j", action="store_true")

    sponsor_remove = sponsor_sub.add_parser("remove", help="Remove a connection")
    sponsor_remove.add_argument("id", help="Connection id")

    return parser


async def run(args) -> None:
    ctx = await open_context(get_settings())
    await COMMANDS[args.command](args, ctx)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    level = logging.DEBUG if args.verbose else getattr(logging, settings.log_level.upper(), logging.WARNING)
    logging.basicConfig(level=level)

    try:
        asyncio.run(run(args))
    except CompanionError as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
