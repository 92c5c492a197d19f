"""Sponsor link commands."""

import sys

from companion.sponsor.handshake import SponsorHandshake

from .helpers import CliContext, print_json, validate_input


def _connection_dict(connection) -> dict:
    return {
        "id": connection.id,
        "role": connection.role.value,
        "invite_code": connection.invite_code,
        "state": connection.state.value,
        "display_name": connection.display_name,
        "peer_name": connection.peer_name,
        "created_at": connection.created_at,
        "expires_at": connection.expires_at,
    }


async def cmd_sponsor(args, ctx: CliContext):
    """Handle sponsor subcommands."""
    handshake = SponsorHandshake(ctx.store, ctx.keystore)
    name = validate_input(args.name, "name", 100) if getattr(args, "name", None) else None

    if args.sponsor_action == "invite":
        connection, payload = await handshake.create_invite(display_name=name)
        print(f"✓ Invite {connection.invite_code} created (expires {connection.expires_at:%Y-%m-%d})")
        print("  Send this to your sponsor:")
        print(payload)

    elif args.sponsor_action == "accept":
        connection, payload = await handshake.connect_as_sponsor(args.payload, display_name=name)
        peer = connection.peer_name or "your sponsee"
        print(f"✓ Connected as sponsor for {peer}")
        print(f"  Link fingerprint: {handshake.link_fingerprint(connection.id)}")
        print("  Send this confirmation back:")
        print(payload)

    elif args.sponsor_action == "confirm":
        connection = await handshake.confirm_invite(args.payload)
        peer = connection.peer_name or "your sponsor"
        print(f"✓ Connected with {peer}")
        print(f"  Link fingerprint: {handshake.link_fingerprint(connection.id)}")

    elif args.sponsor_action == "list":
        connections = await handshake.list_connections(include_removed=args.all)
        if args.json:
            print_json([_connection_dict(c) for c in connections])
            return
        if not connections:
            print("No sponsor connections")
            return
        for c in connections:
            peer = f" with {c.peer_name}" if c.peer_name else ""
            print(f"[{c.id}] {c.role.value} {c.invite_code} {c.state.value}{peer}")

    elif args.sponsor_action == "remove":
        if not await handshake.remove_connection(args.id):
            print(f"✗ No active connection {args.id}")
            sys.exit(1)
        print(f"✓ Removed connection {args.id}")
