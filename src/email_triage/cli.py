"""Command-line interface for Email Triage.

This module provides the main entry point for the CLI application.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import structlog
from pydantic import ValidationError as PydanticValidationError

from email_triage import __version__
from email_triage.config import Settings, get_settings
from email_triage.exceptions import EmailTriageError, ValidationError
from email_triage.index import MessageRepository
from email_triage.models import Message, SearchResult
from email_triage.ollama import OllamaClient
from email_triage.search import SearchService

logger = structlog.get_logger()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="email-triage", description="Email Triage")
    parser.add_argument("--user", required=True, help="User whose mailbox is used")
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to the SQLite database (default: settings database_path)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    search_parser = subparsers.add_parser("search", help="Natural-language search")
    search_parser.add_argument("query", help="Free-text query, e.g. 'invoices from acme last month'")

    keyword_parser = subparsers.add_parser("keyword", help="Plain substring search")
    keyword_parser.add_argument("keyword", help="Text to look for")

    embed_parser = subparsers.add_parser("embed", help="Generate missing message embeddings")
    embed_parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Messages to embed in this run (default: settings embedding_batch_size)",
    )
    embed_parser.add_argument(
        "--status",
        action="store_true",
        help="Report embedding coverage instead of embedding",
    )

    buckets_parser = subparsers.add_parser("buckets", help="Manage buckets")
    buckets_sub = buckets_parser.add_subparsers(dest="buckets_command", required=True)
    buckets_sub.add_parser("list", help="List buckets")
    create_parser = buckets_sub.add_parser("create", help="Create a bucket")
    create_parser.add_argument("name")
    create_parser.add_argument("--description", default=None)
    create_parser.add_argument("--color", default=None)
    delete_parser = buckets_sub.add_parser("delete", help="Delete a bucket")
    delete_parser.add_argument("bucket_id")
    buckets_sub.add_parser("seed", help="Create the default buckets")

    messages_parser = subparsers.add_parser("messages", help="Manage stored messages")
    messages_sub = messages_parser.add_subparsers(dest="messages_command", required=True)
    import_parser = messages_sub.add_parser("import", help="Upsert messages from a JSON Lines file")
    import_parser.add_argument("file", type=Path)

    return parser


def _settings_for(args: argparse.Namespace) -> Settings:
    settings = get_settings()
    if args.db is not None:
        settings = settings.model_copy(update={"database_path": args.db})
    return settings


def _open_repository(settings: Settings) -> MessageRepository:
    repo = MessageRepository(settings.database_path)
    repo.initialize()
    return repo


def _print_result(result: SearchResult) -> None:
    print(f"Strategy: {result.strategy.value} ({result.total_count} found)")
    for hit in result.emails:
        m = hit.message
        bucket = m.bucket.name if m.bucket else "-"
        sender = m.sender_email or m.sender_name or "(unknown sender)"
        score = f"\t{hit.similarity:.3f}" if hit.similarity is not None else ""
        print(f"{m.received_at.isoformat()}\t{bucket}\t{sender}\t{m.subject}{score}")


async def _cmd_search(args: argparse.Namespace) -> int:
    settings = _settings_for(args)
    async with OllamaClient(settings) as client:
        service = SearchService.from_settings(settings, ollama_client=client)
        result = await service.smart_search(args.user, args.query)
    _print_result(result)
    return 0


async def _cmd_keyword(args: argparse.Namespace) -> int:
    settings = _settings_for(args)
    async with OllamaClient(settings) as client:
        service = SearchService.from_settings(settings, ollama_client=client)
        result = await service.keyword_search(args.user, args.keyword)
    _print_result(result)
    return 0


async def _cmd_embed(args: argparse.Namespace) -> int:
    settings = _settings_for(args)
    async with OllamaClient(settings) as client:
        service = SearchService.from_settings(settings, ollama_client=client)
        if args.status:
            coverage = await service.embedding_coverage(args.user)
            print(
                f"{coverage.with_embeddings}/{coverage.total} messages embedded "
                f"({coverage.percentage}%, {coverage.remaining} remaining)"
            )
            return 0
        report = await service.generate_embeddings(args.user, args.batch_size)
    print(
        f"Embedded {report.processed} messages "
        f"({report.failed} failed, {report.skipped} skipped, {report.remaining} remaining)"
    )
    return 0


def _cmd_buckets(args: argparse.Namespace) -> int:
    repo = _open_repository(_settings_for(args))

    if args.buckets_command == "list":
        for b in repo.list_buckets(args.user):
            marker = " (default)" if b.is_default else ""
            print(f"{b.id}\t{b.color}\t{b.name}{marker}\t{b.description or ''}")
        return 0

    if args.buckets_command == "create":
        bucket = repo.create_bucket(args.user, args.name, description=args.description, color=args.color)
        print(f"Created bucket {bucket.name} ({bucket.id})")
        return 0

    if args.buckets_command == "delete":
        unassigned = repo.delete_bucket(args.user, args.bucket_id)
        print(f"Deleted bucket {args.bucket_id}; {unassigned} messages need reclassification")
        return 0

    if args.buckets_command == "seed":
        created = repo.ensure_default_buckets(args.user)
        print(f"Created {len(created)} default buckets")
        return 0

    logger.error("unknown_command", command=args.buckets_command)
    return 2


def _read_messages(path: Path, user_id: str) -> list[Message]:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        raise ValidationError(f"Cannot read {path}: {e}") from e

    messages = []
    for lineno, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            data = json.loads(line)
            if not isinstance(data, dict):
                raise ValidationError(f"{path}:{lineno}: expected a JSON object")
            messages.append(Message.model_validate({**data, "user_id": user_id}))
        except (json.JSONDecodeError, PydanticValidationError) as e:
            raise ValidationError(f"{path}:{lineno}: {e}") from e
    return messages


def _cmd_messages(args: argparse.Namespace) -> int:
    if args.messages_command == "import":
        repo = _open_repository(_settings_for(args))
        messages = _read_messages(args.file, args.user)
        repo.upsert_messages(messages)
        logger.info("messages_imported", user_id=args.user, count=len(messages), file=str(args.file))
        print(f"Imported {len(messages)} messages")
        return 0

    logger.error("unknown_command", command=args.messages_command)
    return 2


def main(args: list[str] | None = None) -> int:
    """Main entry point for the Email Triage CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, 1 for operation failures, 2 for usage errors).
    """
    if args is None:
        args = sys.argv[1:]

    settings = get_settings()

    # Configure logging; stdout is reserved for command output.
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )

    logger.info("email_triage_started", version=__version__, debug=settings.debug)

    parser = _build_parser()
    parsed = parser.parse_args(args)

    try:
        if parsed.command == "search":
            return asyncio.run(_cmd_search(parsed))
        if parsed.command == "keyword":
            return asyncio.run(_cmd_keyword(parsed))
        if parsed.command == "embed":
            return asyncio.run(_cmd_embed(parsed))
        if parsed.command == "buckets":
            return _cmd_buckets(parsed)
        if parsed.command == "messages":
            return _cmd_messages(parsed)
    except EmailTriageError as e:
        logger.error("command_failed", command=parsed.command, error=str(e), error_type=type(e).__name__)
        print(f"Error: {e}", file=sys.stderr)
        return 1

    logger.error("unknown_command", command=parsed.command)
    return 2


if __name__ == "__main__":
    sys.exit(main())
