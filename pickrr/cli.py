"""
Command Line Interface for Pickrr
Server, queue worker, one-shot sync and store inspection.
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime

from .config import CONFIG_KEYS, Settings

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO"):
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def _add_db_argument(parser):
    parser.add_argument(
        "--db", default=None,
        help="SQLite database path (default: CONFIG_PATH/STATE_FILE)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pickrr",
        description="Pickrr - request lifecycle tracking for Overseerr, qBittorrent, Radarr and Sonarr",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start the HTTP server
  pickrr serve --port 8080

  # Run the webhook queue worker
  pickrr worker

  # Reconcile with Overseerr once
  pickrr sync

  # Inspect the store
  pickrr state --requests
  pickrr queue list
  pickrr config set WEBHOOK_SECRET s3cret

Environment Variables:
  OVERSEERR_URL, OVERSEERR_API_KEY   - Request manager
  QBIT_URL, QBIT_USERNAME, QBIT_PASSWORD - Download client
  RADARR_URL, RADARR_API_KEY         - Movie library manager
  SONARR_URL, SONARR_API_KEY         - Series library manager
  TMDB_API_KEY                       - Metadata provider
  CONFIG_PATH, STATE_FILE            - Store location (default: /config/pickrr.db)
  WEBHOOK_SECRET                     - Shared webhook secret (fallback for the settings table)
  LOG_LEVEL, LOG_FILE, LOG_FORMAT    - Logging
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP server")
    serve_parser.add_argument("--host", "-H", default=None, help="Host to bind to")
    serve_parser.add_argument("--port", "-p", type=int, default=None, help="Port to listen on")
    serve_parser.add_argument("--log-level", "-l", default=None, help="Log level")
    serve_parser.add_argument("--log-file", help="Log file path (enables rotation)")
    serve_parser.add_argument(
        "--log-format", choices=["text", "json"], default=None,
        help="Log format: text or json",
    )
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload (dev mode)")

    # Worker command
    worker_parser = subparsers.add_parser("worker", help="Process queued webhook jobs")
    worker_parser.add_argument(
        "--interval", type=float, default=None, help="Poll interval in seconds"
    )
    worker_parser.add_argument(
        "--once", action="store_true", help="Process due jobs once and exit"
    )

    # Sync command
    subparsers.add_parser("sync", help="Reconcile with the request manager once")

    # State command
    state_parser = subparsers.add_parser("state", help="View persisted state")
    _add_db_argument(state_parser)
    state_parser.add_argument("--requests", action="store_true", help="Show requests")
    state_parser.add_argument("--torrents", action="store_true", help="Show torrents")
    state_parser.add_argument("--queue", action="store_true", help="Show queued webhook jobs")
    state_parser.add_argument("--stats", action="store_true", help="Show statistics")

    # Queue command
    queue_parser = subparsers.add_parser("queue", help="Manage the webhook queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command")
    _add_db_argument(queue_subparsers.add_parser("list", help="List queued jobs"))
    _add_db_argument(queue_subparsers.add_parser("clear", help="Drop all queued jobs"))

    # Config command
    config_parser = subparsers.add_parser("config", help="Read or write stored settings")
    config_subparsers = config_parser.add_subparsers(dest="config_command")
    config_get = config_subparsers.add_parser("get", help="Show settings")
    _add_db_argument(config_get)
    config_get.add_argument("key", nargs="?", help="Setting key (default: all known keys)")
    config_set = config_subparsers.add_parser("set", help="Store a setting")
    _add_db_argument(config_set)
    config_set.add_argument("key", help="Setting key")
    config_set.add_argument("value", help="Setting value")

    # Logs command
    logs_parser = subparsers.add_parser("logs", help="View activity logs")
    _add_db_argument(logs_parser)
    logs_parser.add_argument("--limit", "-n", type=int, default=50, help="Number of entries")
    logs_parser.add_argument(
        "--level", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Minimum log level",
    )
    logs_parser.add_argument("--request", help="Filter by request id")

    # Test command
    subparsers.add_parser("test", help="Test connections to all external services")

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "serve":
        run_server(args)
    elif args.command == "worker":
        asyncio.run(run_worker(args))
    elif args.command == "sync":
        asyncio.run(run_sync(args))
    elif args.command == "state":
        asyncio.run(run_state(args))
    elif args.command == "queue":
        asyncio.run(run_queue(args))
    elif args.command == "config":
        asyncio.run(run_config(args))
    elif args.command == "logs":
        asyncio.run(run_logs(args))
    elif args.command == "test":
        asyncio.run(run_test(args))
    else:
        parser.print_help()
        sys.exit(1)


def run_server(args):
    """Run the HTTP server."""
    import uvicorn

    if args.host:
        os.environ["HOST"] = args.host
    if args.port:
        os.environ["PORT"] = str(args.port)
    if args.log_level:
        os.environ["LOG_LEVEL"] = args.log_level
    if args.log_file:
        os.environ["LOG_FILE"] = args.log_file
    if args.log_format:
        os.environ["LOG_FORMAT"] = args.log_format

    settings = Settings()
    setup_logging(settings.log_level)
    logger.info(f"Starting Pickrr on {settings.host}:{settings.port}")
    logger.info(f"Store: {settings.db_path}")

    uvicorn.run(
        "pickrr.server:app",
        host=settings.host,
        port=settings.port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
    )


async def run_worker(args):
    """Consume the webhook queue."""
    from .logging_config import setup_logging as setup_structured_logging
    from .services import build_services

    settings = Settings()
    setup_structured_logging(
        log_level=settings.log_level,
        log_file=settings.log_file,
        log_format=settings.log_format,
        max_file_size_mb=settings.log_max_size_mb,
        backup_count=settings.log_backup_count,
    )
    os.makedirs(settings.config_path, exist_ok=True)
    services = await build_services(settings)
    worker = services.worker()
    try:
        if args.once:
            counts = await worker.run_once()
            print(f"done={counts['done']} retry={counts['retry']} dropped={counts['dropped']}")
        else:
            await worker.run_forever(args.interval or settings.queue_poll_interval)
    finally:
        await services.close()


async def run_sync(args):
    """Run the reconciliation job once."""
    from .services import build_services

    settings = Settings()
    setup_logging(settings.log_level)
    services = await build_services(settings)
    try:
        result = await services.reconciliation.run()
        print(
            f"imported={result.imported} updated={result.updated} "
            f"pruned={result.pruned} skipped={result.skipped}"
        )
        for error in result.errors:
            print(f"  error: {error}")
        if result.errors:
            sys.exit(2)
    finally:
        await services.close()


async def _open_store(args):
    from .persistence import PersistenceManager

    db_path = args.db or Settings().db_path
    if not os.path.exists(db_path):
        print(f"Database not found: {db_path}")
        sys.exit(1)

    pm = PersistenceManager(db_path)
    await pm.initialize()
    return pm


def _short(text: str, width: int) -> str:
    text = text or ""
    return text[:width - 3] + "..." if len(text) > width else text


async def run_state(args):
    """View persisted state."""
    pm = await _open_store(args)

    try:
        show_all = not (args.requests or args.torrents or args.queue or args.stats)

        if args.stats or show_all:
            stats = await pm.get_stats()
            print("\n=== Database Statistics ===")
            by_status = stats.pop("requests_by_status", {})
            for table, count in stats.items():
                print(f"  {table}: {count}")
            for status, count in sorted(by_status.items()):
                print(f"    {status}: {count}")

        if args.requests or show_all:
            requests = await pm.list_requests()
            print(f"\n=== Requests ({len(requests)}) ===")
            if requests:
                print(f"{'ID':<34} {'Upstream':<9} {'Title':<30} {'Kind':<6} {'Status':<19}")
                print("-" * 100)
                for r in requests:
                    print(
                        f"{r.id:<34} {r.upstream_id:<9} {_short(r.title, 30):<30} "
                        f"{r.media_kind.value:<6} {r.status.value:<19}"
                    )

        if args.torrents or show_all:
            pairs = await pm.list_torrents()
            print(f"\n=== Torrents ({len(pairs)}) ===")
            if pairs:
                print(f"{'Request':<30} {'Season':<7} {'Title':<40} {'Hash':<12}")
                print("-" * 90)
                for t, r in pairs:
                    hash_short = (t.download_client_hash or "-")[:10]
                    print(
                        f"{_short(r.title, 30):<30} {t.season_number:<7} "
                        f"{_short(t.title, 40):<40} {hash_short:<12}"
                    )

        if args.queue or show_all:
            jobs = await pm.get_jobs()
            print(f"\n=== Queue ({len(jobs)}) ===")
            _print_jobs(jobs)

    finally:
        await pm.close()


def _print_jobs(jobs):
    if not jobs:
        return
    print(f"{'ID':<34} {'Upstream':<9} {'Attempts':<9} {'Next attempt':<20} {'Last error'}")
    print("-" * 110)
    for job in jobs:
        next_at = datetime.fromtimestamp(job.next_attempt_at).strftime("%Y-%m-%d %H:%M:%S")
        print(
            f"{job.id:<34} {job.payload.get('upstream_id', '?'):<9} "
            f"{job.attempts}/{job.max_attempts:<7} {next_at:<20} {_short(job.last_error or '', 40)}"
        )


async def run_queue(args):
    """Manage the webhook queue."""
    pm = await _open_store(args)

    try:
        if args.queue_command == "list":
            jobs = await pm.get_jobs()
            if not jobs:
                print("Queue is empty.")
                return
            print(f"\nQueue ({len(jobs)} jobs):\n")
            _print_jobs(jobs)

        elif args.queue_command == "clear":
            count = await pm.clear_jobs()
            print(f"Cleared {count} jobs from queue.")

        else:
            print("Usage: pickrr queue {list,clear}")
            sys.exit(1)

    finally:
        await pm.close()


async def run_config(args):
    """Read or write stored settings."""
    from .config import ConfigStore

    pm = await _open_store(args)
    store = ConfigStore(pm)

    try:
        if args.config_command == "get":
            keys = [args.key] if args.key else list(CONFIG_KEYS)
            values = await store.get_many(keys)
            for key in keys:
                value = values.get(key)
                if value and "SECRET" in key:
                    value = "*" * 8
                print(f"{key}={value if value is not None else ''}")

        elif args.config_command == "set":
            await store.set(args.key, args.value)
            print(f"Saved {args.key}")

        else:
            print("Usage: pickrr config {get,set}")
            sys.exit(1)

    finally:
        await pm.close()


async def run_logs(args):
    """View activity logs."""
    pm = await _open_store(args)

    try:
        logs = await pm.get_activity_log(
            limit=args.limit,
            level=args.level,
            request_id=args.request,
        )

        if not logs:
            print("No activity logs found.")
            return

        print(f"\nActivity Log ({len(logs)} entries):\n")

        level_colors = {
            "DEBUG": "\033[36m",    # Cyan
            "INFO": "\033[32m",     # Green
            "WARNING": "\033[33m",  # Yellow
            "ERROR": "\033[31m",    # Red
        }
        reset = "\033[0m"

        for entry in logs:
            ts = datetime.fromtimestamp(entry.timestamp).strftime("%Y-%m-%d %H:%M:%S")
            color = level_colors.get(entry.level, "")
            print(f"{ts} {color}[{entry.level:7}]{reset} {entry.action}: {entry.title or ''}")
            if entry.details:
                print(f"           {entry.details}")

    finally:
        await pm.close()


async def run_test(args):
    """Test connections to every external service."""
    from .services import build_services

    settings = Settings()
    setup_logging("WARNING")
    services = await build_services(settings)

    failed = False
    try:
        for name, client in services.clients.items():
            if not client.configured:
                print(f"  {name:<12} not configured")
                continue
            ok, message = await client.test_connection(timeout=settings.health_check_timeout)
            print(f"  {name:<12} {'ok' if ok else 'FAILED'}: {message}")
            failed = failed or not ok
    finally:
        await services.close()

    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
