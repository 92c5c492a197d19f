"""CLI command handlers."""

from .sponsor import cmd_sponsor
from .sync import cmd_dead_letters, cmd_init, cmd_migrate_envelopes, cmd_status, cmd_sync, cmd_wipe

__all__ = [
    "cmd_dead_letters",
    "cmd_init",
    "cmd_migrate_envelopes",
    "cmd_sponsor",
    "cmd_status",
    "cmd_sync",
    "cmd_wipe",
]
