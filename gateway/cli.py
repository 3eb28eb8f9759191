"""CLI entrypoints for gateway operational tasks."""

from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Sequence

from gateway.config import configure_structlog, get_settings
from gateway.core.oauth_state import get_oauth_state_broker
from gateway.core.sessions import get_session_manager
from gateway.db.session import dispose_engine
from gateway.db.store import open_store


async def _run_sweep_oauth_states() -> int:
    """Delete every OAuth state past its expiry."""
    broker = get_oauth_state_broker()
    try:
        async with open_store() as db:
            deleted = await broker.sweep_expired(db)
    finally:
        await dispose_engine()
    print(json.dumps({"deleted_oauth_states": deleted}))
    return 0


async def _run_purge_cli_sessions() -> int:
    """Delete CLI sessions whose refresh window has closed."""
    session_manager = get_session_manager()
    try:
        async with open_store() as db:
            deleted = await session_manager.purge_expired(db)
    finally:
        await dispose_engine()
    print(json.dumps({"deleted_cli_sessions": deleted}))
    return 0


async def _run_delete_device_session(device_session_id: str) -> int:
    """Tear down one device session with its connections and OAuth states."""
    session_manager = get_session_manager()
    try:
        async with open_store() as db:
            removed = await session_manager.teardown_device_session(db, device_session_id)
    finally:
        await dispose_engine()
    print(json.dumps({"session_id": device_session_id, "deleted": removed}))
    return 0 if removed else 1


def _build_parser() -> argparse.ArgumentParser:
    """Build command-line parser for supported operational commands."""
    parser = argparse.ArgumentParser(prog="python -m gateway.cli")
    subcommands = parser.add_subparsers(dest="command", required=True)

    subcommands.add_parser("sweep-oauth-states", help="Delete expired OAuth states.")
    subcommands.add_parser("purge-cli-sessions", help="Delete expired CLI sessions.")
    delete_parser = subcommands.add_parser(
        "delete-device-session", help="Delete a device session and everything bound to it."
    )
    delete_parser.add_argument("--session-id", required=True)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run CLI command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_structlog(get_settings())
    if args.command == "sweep-oauth-states":
        return asyncio.run(_run_sweep_oauth_states())
    if args.command == "purge-cli-sessions":
        return asyncio.run(_run_purge_cli_sessions())
    if args.command == "delete-device-session":
        return asyncio.run(_run_delete_device_session(args.session_id))
    parser.error("Unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
