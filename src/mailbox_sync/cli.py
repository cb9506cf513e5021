"""Command-line interface for the mailbox sync engine.

This module provides the main entry point for the CLI application.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import structlog

from mailbox_sync import __version__
from mailbox_sync.auth import TokenManager
from mailbox_sync.config import Settings, get_settings
from mailbox_sync.exceptions import MailboxError
from mailbox_sync.push import decode_push
from mailbox_sync.service import MailboxService
from mailbox_sync.store import SQLiteMailboxStore

logger = structlog.get_logger()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mailbox-sync", description="Gmail mailbox sync engine")
    subparsers = parser.add_subparsers(dest="command", required=True)

    db_help = "Path to the SQLite store (default: settings store_db_path)"

    # Auth commands
    auth_parser = subparsers.add_parser("auth", help="Connect and disconnect accounts")
    auth_sub = auth_parser.add_subparsers(dest="auth_command", required=True)

    url_parser = auth_sub.add_parser("url", help="Print the consent URL")
    url_parser.add_argument("--redirect-uri", required=True, help="Registered OAuth redirect URI")
    url_parser.add_argument("--state", default=None, help="Opaque state echoed back on redirect")

    exchange_parser = auth_sub.add_parser("exchange", help="Exchange an authorization code")
    exchange_parser.add_argument("code", help="Authorization code from the redirect")
    exchange_parser.add_argument("--redirect-uri", required=True, help="Same redirect URI as for 'url'")
    exchange_parser.add_argument("--account", required=True, help="Local account identifier")
    exchange_parser.add_argument("--db", type=Path, default=None, help=db_help)

    revoke_parser = auth_sub.add_parser("revoke", help="Revoke tokens and forget the account")
    revoke_parser.add_argument("--account", required=True, help="Local account identifier")
    revoke_parser.add_argument("--db", type=Path, default=None, help=db_help)

    # Sync
    sync_parser = subparsers.add_parser("sync", help="Sync an account from its stored cursor")
    sync_parser.add_argument("--account", required=True, help="Local account identifier")
    sync_parser.add_argument(
        "--label",
        action="append",
        default=None,
        help="Label to sync; repeatable (default: INBOX)",
    )
    sync_parser.add_argument("--max-results", type=int, default=None, help="Max messages per call")
    sync_parser.add_argument("--full", action="store_true", help="Ignore the stored cursor")
    sync_parser.add_argument("--db", type=Path, default=None, help=db_help)

    # Push
    push_parser = subparsers.add_parser("push", help="Work with push notifications")
    push_sub = push_parser.add_subparsers(dest="push_command", required=True)
    decode_parser = push_sub.add_parser("decode", help="Decode a base64 notification payload")
    decode_parser.add_argument("data", help="The message.data field of a Pub/Sub push")

    return parser


def _build_service(settings: Settings, db_path: Path | None) -> MailboxService:
    store = SQLiteMailboxStore(db_path or settings.store_db_path)
    store.initialize()
    return MailboxService(_token_manager(settings), store, settings)


def _token_manager(settings: Settings) -> TokenManager:
    return TokenManager(
        settings.oauth_client(),
        scopes=settings.gmail_scopes,
        refresh_buffer_seconds=settings.token_refresh_buffer_seconds,
        default_lifetime_seconds=settings.default_token_lifetime_seconds,
    )


def _cmd_auth_url(args: argparse.Namespace, settings: Settings) -> int:
    print(_token_manager(settings).build_authorization_url(args.redirect_uri, state=args.state))
    return 0


async def _cmd_auth_exchange(args: argparse.Namespace, settings: Settings) -> int:
    service = _build_service(settings, args.db)
    record = await service.connect(args.account, args.code, args.redirect_uri)
    refresh = "with" if record.can_refresh else "without"
    print(f"Connected {args.account} ({refresh} refresh token), expires {record.expires_at.isoformat()}")
    return 0


async def _cmd_auth_revoke(args: argparse.Namespace, settings: Settings) -> int:
    service = _build_service(settings, args.db)
    await service.disconnect(args.account)
    print(f"Disconnected {args.account}")
    return 0


async def _cmd_sync(args: argparse.Namespace, settings: Settings) -> int:
    service = _build_service(settings, args.db)
    result = await service.sync(
        args.account,
        label_ids=args.label or ["INBOX"],
        max_results=args.max_results,
        full=args.full,
    )
    print(
        f"{result.mode.value} sync: {len(result.emails)} messages, {result.skipped} skipped, "
        f"cursor {result.new_cursor}{' (more available)' if result.has_more else ''}"
    )
    for email in result.emails:
        unread = "READ" if email.is_read else "UNREAD"
        print(f"{unread}\t{email.date.isoformat()}\t{email.from_address}\t{email.subject}")
    return 0


def _cmd_push_decode(args: argparse.Namespace) -> int:
    notification = decode_push(args.data)
    print(f"{notification.email_address}\t{notification.history_id}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point for the mailbox sync CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, 1 for a mailbox error, 2 for usage errors).
    """
    if args is None:
        args = sys.argv[1:]

    settings = get_settings()

    # Configure logging
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level.upper())
        ),
    )

    logger.info("mailbox_sync_started", version=__version__, debug=settings.debug)

    parser = _build_parser()
    parsed = parser.parse_args(args)

    try:
        if parsed.command == "auth":
            if parsed.auth_command == "url":
                return _cmd_auth_url(parsed, settings)
            if parsed.auth_command == "exchange":
                return asyncio.run(_cmd_auth_exchange(parsed, settings))
            if parsed.auth_command == "revoke":
                return asyncio.run(_cmd_auth_revoke(parsed, settings))
        if parsed.command == "sync":
            return asyncio.run(_cmd_sync(parsed, settings))
        if parsed.command == "push" and parsed.push_command == "decode":
            return _cmd_push_decode(parsed)
    except MailboxError as exc:
        logger.error("command_failed", command=parsed.command, kind=exc.kind.value, error=exc.message)
        print(f"Error ({exc.kind.value}): {exc.message}", file=sys.stderr)
        return 1

    logger.error("unknown_command", command=parsed.command)
    return 2


if __name__ == "__main__":
    sys.exit(main())
