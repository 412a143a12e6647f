"""Command-line interface for davsync.

Subcommands:

- ``sync``        -- run one pass and print a report.
- ``test``        -- check that the server answers.
- ``watch``       -- run passes on a timer until interrupted.
- ``status``      -- show what the state file currently tracks.
- ``reset-state`` -- forget every recorded fingerprint.

User-facing output goes to stdout; logging goes to stderr (or a file).
"""

import argparse
import json
import logging
import os
import sys
import threading
from pathlib import Path

from dotenv import load_dotenv

from . import __version__
from .config import Config, default_state_file, load_config
from .config_loader import discover_config_files, load_hierarchical_config
from .config_schema import UnifiedConfig, build_config, to_fallbacks
from .logger import setup_logging
from .sync.models import SyncStatusEvent
from .sync.reporter import format_pass_report, result_to_json
from .sync.scheduler import SyncScheduler
from .sync.state import SyncStateStore

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="davsync",
        description="Keep a local directory in sync with a WebDAV folder",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # One pass using settings from .env or .davsync/config.yml
  davsync sync

  # Override connection settings
  davsync sync --url https://cloud.example.com/remote.php/dav/files/alice \\
      --username alice --remote-folder Notes --local-root ~/Notes

  # Sync every 5 minutes until Ctrl+C
  davsync watch --interval 5

  # Machine-readable pass summary
  davsync sync --json
        """,
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"davsync version {__version__}",
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--url",
        help="WebDAV base URL (takes precedence over WEBDAV_URL and config files)",
    )
    common.add_argument("--username", help="Basic-auth username")
    common.add_argument(
        "--password",
        help="Basic-auth password"
        " (visible in process list -- prefer WEBDAV_PASSWORD env var)",
    )
    common.add_argument(
        "--remote-folder", help="Folder below the base URL to sync"
    )
    common.add_argument("--local-root", help="Local directory to sync")
    common.add_argument(
        "--interval",
        type=int,
        help="Auto-sync interval in minutes (1-1440)",
    )
    common.add_argument(
        "--insecure",
        action="store_true",
        help="Skip SSL certificate verification (use only for development)",
    )
    common.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )
    common.add_argument("--log-file", help="Also write logs to this file")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    sync_cmd = sub.add_parser(
        "sync", parents=[common], help="Run one sync pass"
    )
    sync_cmd.add_argument(
        "--json", action="store_true", help="Print the result as JSON"
    )
    sub.add_parser(
        "test", parents=[common], help="Test the WebDAV connection"
    )
    sub.add_parser(
        "watch", parents=[common], help="Sync on a timer until interrupted"
    )
    sub.add_parser(
        "status", parents=[common], help="Show tracked files and last sync"
    )
    sub.add_parser(
        "reset-state", parents=[common], help="Clear the sync state file"
    )
    return parser


def _load_unified() -> UnifiedConfig:
    if discover_config_files():
        return build_config(load_hierarchical_config())
    return UnifiedConfig()


def _resolve_config(args: argparse.Namespace, unified: UnifiedConfig) -> Config:
    return load_config(
        url=args.url,
        username=args.username,
        password=args.password,
        remote_folder=args.remote_folder,
        local_root=args.local_root,
        interval_minutes=args.interval,
        auto_sync=args.command == "watch",
        insecure=args.insecure,
        debug=args.debug,
        yaml_fallbacks=to_fallbacks(unified),
    )


def _state_path(unified: UnifiedConfig) -> Path:
    """State file location without requiring connection settings."""
    override = os.getenv("DAVSYNC_STATE_FILE") or unified.sync.state_file
    if override:
        return Path(override).expanduser()
    return default_state_file()


def _print_status(event: SyncStatusEvent) -> None:
    if event.message:
        print(f"[{event.status.value}] {event.message}", flush=True)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_sync(args: argparse.Namespace, config: Config) -> int:
    scheduler = SyncScheduler(config)
    try:
        result = scheduler.sync_now()
    finally:
        scheduler.close()

    if result is None:
        print(
            f"Sync failed ({scheduler.current_status.value}). "
            "See log output for details.",
            file=sys.stderr,
        )
        return 1

    if args.json:
        print(json.dumps(result_to_json(result), indent=2))
    else:
        print(format_pass_report(result))
    return 0


def _cmd_test(config: Config) -> int:
    scheduler = SyncScheduler(config)
    try:
        ok = scheduler.test_connection()
    finally:
        scheduler.close()

    if ok:
        print(f"Connected to {config.webdav_url}")
        return 0
    print(f"Could not connect to {config.webdav_url}", file=sys.stderr)
    return 1


def _cmd_watch(config: Config) -> int:
    scheduler = SyncScheduler(config)
    scheduler.events.on_status_changed(_print_status)
    stop = threading.Event()

    scheduler.start()
    print(
        f"Watching {config.local_root} every {config.interval_minutes} "
        "minutes (Ctrl+C to stop)"
    )
    try:
        scheduler.sync_now()
        stop.wait()
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        scheduler.cancel()
    finally:
        scheduler.close()
    return 0


def _cmd_status(unified: UnifiedConfig) -> int:
    store = SyncStateStore(_state_path(unified))
    last_sync = store.last_successful_sync
    print(f"State file: {store.state_file}")
    print(f"Remote folder: {store.remote_folder or '/'}")
    print(f"Tracked files: {store.tracked_file_count}")
    print(
        "Last successful sync: "
        + (last_sync.isoformat() if last_sync else "never")
    )
    return 0


def _cmd_reset_state(unified: UnifiedConfig) -> int:
    store = SyncStateStore(_state_path(unified))
    count = store.tracked_file_count
    store.clear_state()
    print(f"Cleared sync state ({count} tracked files): {store.state_file}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Parse *argv* and run the selected command.

    Returns:
        Process exit code: 0 on success, 1 on a failed pass or
        connection test, 2 on a configuration error.
    """
    args = _build_parser().parse_args(argv)

    load_dotenv()
    unified = _load_unified()
    os.environ.setdefault("LOG_LEVEL", unified.logging.level)
    log_file = args.log_file or unified.logging.file
    # Unattended watch runs log to the file alone.
    setup_logging(
        mode="daemon" if args.command == "watch" and log_file else "cli",
        debug=args.debug,
        log_file=log_file,
    )

    if args.command == "status":
        return _cmd_status(unified)
    if args.command == "reset-state":
        return _cmd_reset_state(unified)

    try:
        config = _resolve_config(args, unified)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    if args.command == "sync":
        return _cmd_sync(args, config)
    if args.command == "test":
        return _cmd_test(config)
    return _cmd_watch(config)


def run() -> None:
    """Console-script entry point."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    run()
