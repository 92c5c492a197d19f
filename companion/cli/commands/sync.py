"""Local store and sync commands."""

import logging
import sys

from companion.sponsor.handshake import SponsorHandshake
from companion.storage.schema import SCHEMA_VERSION
from companion.sync.connectivity import ConnectivityMonitor
from companion.sync.engine import SyncEngine
from companion.sync.orchestrator import SyncOrchestrator
from companion.sync.remote import HttpRemoteBackend

from .helpers import CliContext, print_json

logger = logging.getLogger(__name__)


async def cmd_init(args, ctx: CliContext):
    """Create the database and the device encryption key."""
    created = ctx.cipher.initialize_key()
    version = await ctx.store.current_schema_version()

    if args.json:
        print_json({"db_path": str(ctx.store.db_path), "schema_version": version, "key_created": created})
        return
    print(f"✓ Local store ready: {ctx.store.db_path} (schema v{version})")
    print("✓ Encryption key created" if created else "  Encryption key already present")


async def cmd_status(args, ctx: CliContext):
    """Show queue counts and pending records."""
    queue_status = await ctx.queue.status()
    pending_records = await ctx.store.pending_record_count()
    version = await ctx.store.current_schema_version()

    if args.json:
        print_json(
            {
                "schema_version": version,
                "latest_schema_version": SCHEMA_VERSION,
                "pending_records": pending_records,
                "queue": queue_status,
                "has_key": ctx.cipher.has_key(),
                "backend_configured": ctx.credentials is not None,
            }
        )
        return

    print(f"Schema:           v{version} (latest v{SCHEMA_VERSION})")
    print(f"Encryption key:   {'present' if ctx.cipher.has_key() else 'missing'}")
    print(f"Backend:          {'configured' if ctx.credentials else 'not configured'}")
    print(f"Pending records:  {pending_records}")
    print(f"Queued changes:   {queue_status['pending']}")
    print(f"Dead letters:     {queue_status['dead_letter']}")
    for table, count in sorted(queue_status["by_table"].items()):
        print(f"  {table}: {count}")


async def cmd_sync(args, ctx: CliContext):
    """Push queued changes to the backend once."""
    if ctx.credentials is None:
        print("✗ No backend configured")
        print("  Set COMPANION_BACKEND_URL and COMPANION_API_KEY, or write credentials.json")
        sys.exit(1)

    settings = ctx.settings
    session = ctx.session()
    async with HttpRemoteBackend.from_credentials(
        ctx.credentials, timeout=settings.network_timeout_seconds
    ) as remote:
        monitor = ConnectivityMonitor()
        engine = SyncEngine(
            session,
            remote,
            batch_size=args.limit or settings.sync_batch_size,
            max_retries=settings.max_retries,
            backoff_base=settings.backoff_base_seconds,
            backoff_max=settings.backoff_max_seconds,
        )
        orchestrator = SyncOrchestrator.from_settings(session, engine, monitor, settings)
        await monitor.probe(remote.check_reachability)
        result = await orchestrator.sync_now()
        status = await orchestrator.status()

    if result is None:
        if args.json:
            print_json({"skipped": True, "status": status.to_dict()})
        else:
            print(f"✗ Sync skipped: {status.describe()}")
        sys.exit(1)

    if args.json:
        print_json({**result.to_dict(), "status": status.to_dict()})
        return

    print(f"✓ Pushed {result.synced} change(s)")
    if result.failed:
        print(f"⚠️  {result.failed} failed:")
        for error in result.errors[:10]:
            print(f"   - {error}")
    print(f"  Status: {status.describe()}")


async def cmd_dead_letters(args, ctx: CliContext):
    """List queue entries that will not be retried automatically."""
    items = await ctx.queue.dead_letters(limit=args.limit)

    if args.json:
        print_json(
            [
                {
                    "id": i.id,
                    "table": i.table_name,
                    "record_id": i.record_id,
                    "operation": i.operation,
                    "retry_count": i.retry_count,
                    "last_error": i.last_error,
                    "failed_at": i.failed_at,
                }
                for i in items
            ]
        )
        return

    if not items:
        print("✓ No dead letters")
        return
    for i in items:
        print(f"[{i.id}] {i.operation} {i.table_name}/{i.record_id} (retries: {i.retry_count})")
        if i.last_error:
            print(f"    {i.last_error}")


async def cmd_migrate_envelopes(args, ctx: CliContext):
    """Re-encrypt legacy field envelopes."""
    count = await ctx.session().records.migrate_legacy_envelopes()
    if args.json:
        print_json({"migrated_rows": count})
    else:
        print(f"✓ Migrated {count} row(s) to the current envelope format")


async def cmd_wipe(args, ctx: CliContext):
    """Delete all local records, queue entries and sponsor links."""
    if not args.yes:
        print("✗ Refusing to wipe without --yes")
        sys.exit(1)
    await SponsorHandshake(ctx.store, ctx.keystore).forget_all_keys()
    await ctx.store.wipe()
    if args.delete_key:
        ctx.cipher.delete_key()
    print("✓ Local data wiped" + (" and encryption key deleted" if args.delete_key else ""))
