"""CLI entry point for forkstore."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime, timedelta
from pathlib import Path

from .config import load_config
from .storage import (
    LogEntry,
    NoMainVersionError,
    SQLiteBackend,
    StorageError,
    Store,
)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.WARNING)
    else:
        level = logging.DEBUG if verbose else logging.WARNING

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler])


def _open_store(args: argparse.Namespace) -> Store:
    config = load_config(args.config)
    if args.db:
        config.storage.db_path = args.db
    if args.machine:
        config.node.machine_id = args.machine

    store = Store.from_config(config)
    store.connect()
    return store


def _print_report(report) -> None:
    print(
        f"Admitted {len(report.admitted)} entries, "
        f"{report.already_present} already present"
    )
    for failure in report.failures:
        print(
            f"  failed: key={failure.key!r} machine={failure.origin_machine} "
            f"entry={failure.entry_id}: {failure.error}"
        )


def cmd_put(args: argparse.Namespace, store: Store) -> int:
    entry = store.save(args.key, args.value)
    print(entry.entry_id)
    return 0


def cmd_get(args: argparse.Namespace, store: Store) -> int:
    try:
        value = store.load(args.key)
    except NoMainVersionError:
        print(f"{args.key}: not found", file=sys.stderr)
        return 1

    print(value.render())
    return 0


def cmd_delete(args: argparse.Namespace, store: Store) -> int:
    entry = store.delete(args.key)
    print(entry.entry_id)
    return 0


def cmd_list(args: argparse.Namespace, store: Store) -> int:
    for value in store.all():
        print(f"{value.key}: {value.render()}")
    return 0


def cmd_merge(args: argparse.Namespace, store: Store) -> int:
    if not Path(args.other).expanduser().exists():
        print(f"Error: no database at {args.other}", file=sys.stderr)
        return 1

    other = SQLiteBackend(args.other)
    other.connect()
    try:
        report = store.merge(other, strict=args.strict)
    finally:
        other.close()

    _print_report(report)
    return 0 if report.ok else 1


def cmd_cursors(args: argparse.Namespace, store: Store) -> int:
    print(json.dumps([c.to_dict() for c in store.cursors()], indent=2))
    return 0


def cmd_stats(args: argparse.Namespace, store: Store) -> int:
    stats = store.backend.get_stats()
    stats["machine_id"] = store.machine_id
    print(json.dumps(stats, indent=2))
    return 0


def cmd_export(args: argparse.Namespace, store: Store) -> int:
    entries = store.backend.all_entries(include_superseded=True)
    data = {
        "machine_id": store.machine_id,
        "exported_at": datetime.now().isoformat(),
        "entries": [e.to_dict() for e in entries],
    }
    with open(args.file, "w") as f:
        json.dump(data, f, indent=2)

    print(f"Exported {len(entries)} entries to {args.file}")
    return 0


def cmd_import(args: argparse.Namespace, store: Store) -> int:
    with open(args.file) as f:
        data = json.load(f)

    entries = [LogEntry.from_dict(e) for e in data.get("entries", [])]
    report = store.merge(entries, strict=args.strict)
    _print_report(report)
    return 0 if report.ok else 1


def cmd_reclaim(args: argparse.Namespace, store: Store) -> int:
    older_than = None
    if args.older_than_days is not None:
        older_than = timedelta(days=args.older_than_days)

    purged = store.reclaim(older_than=older_than)
    print(f"Reclaimed {purged} entries")
    return 0


async def cmd_serve(args: argparse.Namespace, store: Store) -> int:
    """Serve the store's log to peers."""
    try:
        import uvicorn

        from .sync.server import create_app
    except ImportError as e:
        print(f"Server dependencies not installed: {e}", file=sys.stderr)
        print("Install with: pip install forkstore[server]", file=sys.stderr)
        return 1

    config = load_config(args.config)
    host = args.host or config.server.host
    port = args.port or config.server.port

    print(f"Serving forkstore node {store.machine_id} on http://{host}:{port}")

    app = create_app(config, store)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if args.verbose else "warning",
        )
    )
    await server.serve()
    return 0


async def cmd_sync(args: argparse.Namespace, store: Store) -> int:
    """Exchange entries with the configured peer."""
    from .sync import SyncClient, SyncStatus

    config = load_config(args.config)
    peer_url = args.peer or config.sync.peer_url
    if not peer_url:
        print("No peer URL configured (sync.peer_url or --peer)", file=sys.stderr)
        return 1

    client = SyncClient(
        store,
        remote_url=peer_url,
        batch_size=config.sync.batch_size,
        max_retries=config.sync.max_retries,
        timeout=config.sync.timeout_seconds,
    )

    if args.loop:
        if not config.sync.enabled:
            print("Sync is disabled (sync.enabled: false)", file=sys.stderr)
            return 1

        print(
            f"Syncing {store.machine_id} with {peer_url} "
            f"every {config.sync.sync_interval_minutes} min"
        )
        try:
            await client.sync_loop(
                interval_seconds=config.sync.sync_interval_minutes * 60
            )
        except KeyboardInterrupt:
            print("\nShutting down...")
        return 0

    if args.full:
        result = await client.pull(full=True)
    else:
        result = await client.full_sync()

    print(
        f"Sync {result.status.value}: pushed={result.entries_pushed} "
        f"pulled={result.entries_pulled} failures={result.lineage_failures}"
    )
    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)

    return 0 if result.status == SyncStatus.SUCCESS else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="forkstore",
        description="Branch-preserving replicated key-value store",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Database path (overrides storage.db_path)",
    )
    parser.add_argument(
        "-m", "--machine",
        type=str,
        default=None,
        help="Machine identifier (overrides node.machine_id)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    put_parser = subparsers.add_parser("put", help="Write a value")
    put_parser.add_argument("key")
    put_parser.add_argument("value")
    put_parser.set_defaults(func=cmd_put)

    get_parser = subparsers.add_parser("get", help="Read a value and its branches")
    get_parser.add_argument("key")
    get_parser.set_defaults(func=cmd_get)

    delete_parser = subparsers.add_parser("delete", help="Delete a value")
    delete_parser.add_argument("key")
    delete_parser.set_defaults(func=cmd_delete)

    list_parser = subparsers.add_parser("list", help="List all values")
    list_parser.set_defaults(func=cmd_list)

    merge_parser = subparsers.add_parser("merge", help="Merge another database into this one")
    merge_parser.add_argument("other", help="Path to the other database")
    merge_parser.add_argument(
        "--strict",
        action="store_true",
        help="Roll back the whole merge if any lineage fails",
    )
    merge_parser.set_defaults(func=cmd_merge)

    cursors_parser = subparsers.add_parser("cursors", help="Show replication cursors")
    cursors_parser.set_defaults(func=cmd_cursors)

    stats_parser = subparsers.add_parser("stats", help="Show store statistics")
    stats_parser.set_defaults(func=cmd_stats)

    export_parser = subparsers.add_parser("export", help="Export the log as JSON")
    export_parser.add_argument("file")
    export_parser.set_defaults(func=cmd_export)

    import_parser = subparsers.add_parser("import", help="Merge a JSON log export")
    import_parser.add_argument("file")
    import_parser.add_argument(
        "--strict",
        action="store_true",
        help="Roll back the whole import if any lineage fails",
    )
    import_parser.set_defaults(func=cmd_import)

    reclaim_parser = subparsers.add_parser(
        "reclaim", help="Purge superseded, deleted and discarded entries"
    )
    reclaim_parser.add_argument(
        "--older-than-days",
        type=int,
        default=None,
        help="Only purge entries older than this many days",
    )
    reclaim_parser.set_defaults(func=cmd_reclaim)

    serve_parser = subparsers.add_parser("serve", help="Serve the log to peers")
    serve_parser.add_argument("-p", "--port", type=int, default=None)
    serve_parser.add_argument("--host", type=str, default=None)
    serve_parser.set_defaults(func=cmd_serve, is_async=True)

    sync_parser = subparsers.add_parser("sync", help="Sync with the configured peer")
    sync_parser.add_argument("--peer", type=str, default=None, help="Peer base URL")
    sync_parser.add_argument(
        "--full",
        action="store_true",
        help="Pull the peer's whole history instead of pushing and pulling deltas",
    )
    sync_parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep syncing every sync.sync_interval_minutes until interrupted",
    )
    sync_parser.set_defaults(func=cmd_sync, is_async=True)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.log_level, args.json)

    if not args.command:
        parser.print_help()
        return 1

    store = _open_store(args)
    try:
        func = args.func
        if getattr(args, "is_async", False):
            return asyncio.run(func(args, store))
        return func(args, store)
    except StorageError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
