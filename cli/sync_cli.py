"""CLI for managing the Dropbox sync of the local Nutrack database."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from backend.config import Settings
from backend.database import LocalDatabase
from backend.exceptions import InternalServerError, SyncConflictError, SyncError
from backend.messaging.broadcaster import SSEBroadcaster
from backend.services.sync_service import SyncEngine, build_sync_engine
from backend.services.token_service import (
    TokenExchangeError,
    build_authorize_url,
    create_pkce_pair,
)

EXIT_ERROR = 1
EXIT_CONFLICT = 2


async def _login(settings: Settings, engine: SyncEngine) -> int:
    if not settings.dropbox_client_id:
        print("Error: DROPBOX_CLIENT_ID is not configured")
        return EXIT_ERROR
    verifier, challenge = create_pkce_pair()
    url = build_authorize_url(settings.dropbox_authorize_url, settings.dropbox_client_id, challenge)
    print("Open this URL in a browser and authorize Nutrack:")
    print(f"  {url}")
    code = input("Authorization code: ").strip()
    if not code:
        print("Error: No authorization code entered")
        return EXIT_ERROR
    try:
        credentials = await engine.tokens.exchange_code(code, verifier)
    except TokenExchangeError as exc:
        print(f"Error: {exc}")
        return EXIT_ERROR
    print(f"Logged in to Dropbox (token valid until {credentials.expires_at:%Y-%m-%d %H:%M %Z})")
    return 0


async def _status(engine: SyncEngine) -> int:
    state = engine.ledger.load()
    authenticated = await engine.tokens.is_authenticated()
    print("Sync Status:")
    print(f"  Logged in:   {'yes' if authenticated else 'no'}")
    print(f"  Auto-sync:   {'on' if state.auto_sync_enabled else 'off'}")
    print(f"  Synced:      {'yes' if state.synced else 'no'}")
    print(f"  Stored hash: {state.stored_hash or '-'}")
    return 0


async def _dispatch(args: argparse.Namespace, settings: Settings, engine: SyncEngine) -> int:
    if args.command == "login":
        return await _login(settings, engine)
    if args.command == "logout":
        engine.tokens.logout()
        print("Logged out of Dropbox")
        return 0
    if args.command == "status":
        return await _status(engine)
    if args.command == "upload":
        result = await engine.upload_database(resolve_conflict=args.resolve_conflict)
        print(f"Upload: {result.status}")
        return 0
    if args.command == "download":
        result = await engine.download_database(resolve_conflict=args.resolve_conflict)
        print(f"Download: {result.status}")
        return 0 if result.success else EXIT_ERROR
    if args.command == "sync":
        await engine.sync_if_due(force=args.force)
        print("Sync complete.")
        return 0
    if args.command == "autosync":
        engine.set_auto_sync(args.state == "on")
        print(f"Auto-sync {args.state}")
        return 0
    raise ValueError(f"Unknown command: {args.command}")


async def run(args: argparse.Namespace) -> int:
    """Run one CLI command against the data directory in ``args``."""
    settings = Settings(data_dir=Path(args.data_dir).resolve())
    database = LocalDatabase(settings)
    try:
        await database.create_schema()
        engine = build_sync_engine(settings, database, SSEBroadcaster())
        return await _dispatch(args, settings, engine)
    except SyncConflictError:
        print("Error: Local and remote database both changed since the last sync.")
        print("Re-run upload or download with --resolve-conflict to choose a side.")
        return EXIT_CONFLICT
    except (SyncError, InternalServerError, OSError) as exc:
        print(f"Error: {exc}")
        return EXIT_ERROR
    finally:
        await database.dispose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nutrack-sync",
        description="Sync the local Nutrack database with Dropbox",
    )
    parser.add_argument(
        "--data-dir", "-d", default="./data", help="Data directory (default: ./data)"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("login", help="Authorize access to Dropbox")
    subparsers.add_parser("logout", help="Forget Dropbox credentials and disable auto-sync")
    subparsers.add_parser("status", help="Show login and sync state")
    for name, help_text in (
        ("upload", "Upload the local database"),
        ("download", "Replace the local database with the remote copy"),
    ):
        transfer = subparsers.add_parser(name, help=help_text)
        transfer.add_argument(
            "--resolve-conflict",
            action="store_true",
            help="Overwrite the other side even if both changed",
        )
    sync = subparsers.add_parser("sync", help="Reconcile local and remote database")
    sync.add_argument("--force", action="store_true", help="Ignore the check interval")
    autosync = subparsers.add_parser("autosync", help="Turn automatic sync on or off")
    autosync.add_argument("state", choices=["on", "off"])
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        sys.exit(EXIT_ERROR)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
