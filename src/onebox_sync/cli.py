"""Command-line interface for onebox-sync.

This module provides the main entry point for the CLI application.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

import structlog

from onebox_sync import __version__
from onebox_sync.config import Settings, get_settings, load_accounts
from onebox_sync.exceptions import OneboxSyncError
from onebox_sync.imap import ImapMailboxClient, Rfc822MessageParser
from onebox_sync.index import EmailIndexRepository, SqliteCursorStore
from onebox_sync.models import AccountConfig, Category, EmailQuery
from onebox_sync.notify import build_notifiers
from onebox_sync.ollama import OllamaClassifier
from onebox_sync.sync import IngestionPipeline, SyncSupervisor

logger = structlog.get_logger()


def _add_db_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to the SQLite index database (default: settings index_db_path)",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="onebox-sync",
        description="Multi-account mailbox synchronization engine",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run",
        help="Synchronize every configured account until interrupted",
    )
    _add_db_argument(run_parser)

    search_parser = subparsers.add_parser("search", help="Search indexed emails")
    search_parser.add_argument("query", nargs="?", default=None, help="Text matched in subject and body")
    search_parser.add_argument("--account", default=None, help="Restrict to one account id")
    search_parser.add_argument("--folder", default=None, help="Restrict to one folder")
    search_parser.add_argument(
        "--category",
        default=None,
        choices=[category.value for category in Category],
        help="Restrict to one category",
    )
    search_parser.add_argument("--page", type=int, default=1, help="Page number (1-based)")
    search_parser.add_argument("--limit", type=int, default=20, help="Results per page")
    _add_db_argument(search_parser)

    get_parser = subparsers.add_parser("get", help="Show one indexed email as JSON")
    get_parser.add_argument("email_id", help="Email id (<account_id>-<message_id>)")
    _add_db_argument(get_parser)

    accounts_parser = subparsers.add_parser("accounts", help="List accounts present in the index")
    _add_db_argument(accounts_parser)

    folders_parser = subparsers.add_parser("folders", help="List folders present in the index")
    folders_parser.add_argument("--account", default=None, help="Restrict to one account id")
    _add_db_argument(folders_parser)

    recategorize_parser = subparsers.add_parser(
        "recategorize",
        help="Manually correct the category of an indexed email",
    )
    recategorize_parser.add_argument("email_id", help="Email id (<account_id>-<message_id>)")
    recategorize_parser.add_argument("category", help="New category label")
    _add_db_argument(recategorize_parser)

    return parser


def _open_index(args: argparse.Namespace, settings: Settings) -> EmailIndexRepository:
    db_path: Path = args.db or settings.index_db_path
    repo = EmailIndexRepository(db_path)
    repo.initialize()
    return repo


async def _cmd_run(args: argparse.Namespace) -> int:
    settings = get_settings()
    db_path: Path = args.db or settings.index_db_path

    accounts = load_accounts(settings)
    if not accounts:
        logger.error("no_accounts_configured")
        return 1

    index = EmailIndexRepository(db_path)
    index.initialize()
    cursors = SqliteCursorStore(db_path)
    cursors.initialize()

    classifier = OllamaClassifier(settings)
    notifiers = build_notifiers(settings)
    pipeline = IngestionPipeline(Rfc822MessageParser(), classifier, index, notifiers)

    def _client_factory(account: AccountConfig) -> ImapMailboxClient:
        return ImapMailboxClient(timeout=settings.connect_timeout_seconds)

    supervisor = SyncSupervisor(
        accounts,
        _client_factory,
        pipeline,
        settings,
        cursor_store=cursors,
    )
    supervisor.add_cleanup(classifier.aclose)
    for notifier in notifiers:
        supervisor.add_cleanup(notifier.aclose)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            logger.debug("signal_handler_unavailable", signal=sig.name)

    await supervisor.start()
    sessions_done = asyncio.create_task(supervisor.wait())
    stop_requested = asyncio.create_task(stop.wait())
    try:
        await asyncio.wait({sessions_done, stop_requested}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop_requested.cancel()
        await supervisor.shutdown()
        await sessions_done

    stats = pipeline.stats
    logger.info(
        "sync_finished",
        processed=stats.processed,
        dropped=stats.dropped,
        index_failures=stats.index_failures,
        notifications=stats.notifications,
    )
    return 0


def _cmd_search(args: argparse.Namespace) -> int:
    settings = get_settings()
    repo = _open_index(args, settings)

    filters = EmailQuery(
        q=args.query,
        account_id=args.account,
        folder=args.folder,
        category=Category(args.category) if args.category else None,
    )
    result = repo.query(filters, page=args.page, limit=args.limit)
    for email in result.items:
        print(
            f"{email.date.isoformat()}\t{email.category.value}\t{email.account_id}\t"
            f"{email.from_ or '(unknown sender)'}\t{email.subject}"
        )

    print(f"\nPage {result.page}: {len(result.items)} of {result.total} matches")
    return 0


def _cmd_get(args: argparse.Namespace) -> int:
    settings = get_settings()
    repo = _open_index(args, settings)

    email = repo.get(args.email_id)
    if email is None:
        print(f"Email not found: {args.email_id}", file=sys.stderr)
        return 1

    print(json.dumps(email.to_record(), indent=2, ensure_ascii=False))
    return 0


def _cmd_accounts(args: argparse.Namespace) -> int:
    settings = get_settings()
    repo = _open_index(args, settings)

    for account_id in repo.distinct_values("account_id"):
        print(account_id)
    return 0


def _cmd_folders(args: argparse.Namespace) -> int:
    settings = get_settings()
    repo = _open_index(args, settings)

    for folder in repo.distinct_values("folder", EmailQuery(account_id=args.account)):
        print(folder)
    return 0


def _cmd_recategorize(args: argparse.Namespace) -> int:
    allowed = [category.value for category in Category.assignable()]
    if args.category not in allowed:
        print(
            f"Invalid category {args.category!r}; expected one of: {', '.join(allowed)}",
            file=sys.stderr,
        )
        return 2

    settings = get_settings()
    repo = _open_index(args, settings)

    if not repo.update_field(args.email_id, "category", args.category):
        print(f"Email not found: {args.email_id}", file=sys.stderr)
        return 1

    print(f"{args.email_id}: {args.category}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point for the onebox-sync CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    if args is None:
        args = sys.argv[1:]

    settings = get_settings()

    # Configure logging
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )

    logger.info("onebox_sync_started", version=__version__, debug=settings.debug)

    parser = _build_parser()
    parsed = parser.parse_args(args)

    try:
        if parsed.command == "run":
            return asyncio.run(_cmd_run(parsed))
        if parsed.command == "search":
            return _cmd_search(parsed)
        if parsed.command == "get":
            return _cmd_get(parsed)
        if parsed.command == "accounts":
            return _cmd_accounts(parsed)
        if parsed.command == "folders":
            return _cmd_folders(parsed)
        if parsed.command == "recategorize":
            return _cmd_recategorize(parsed)
    except OneboxSyncError as exc:
        logger.error("command_failed", command=parsed.command, error=str(exc))
        return 1

    logger.error("unknown_command", command=parsed.command)
    return 2


if __name__ == "__main__":
    sys.exit(main())
