"""Minimal CLI entry point for operating Gmail Sync by hand."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from gmail_sync.config.settings import GmailSyncSettings
from gmail_sync.core.auth import authorize_user
from gmail_sync.core.models import ProcessingReport
from gmail_sync.pipeline.service import GmailSync


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def print_report(report: ProcessingReport) -> None:
    line = (
        f"{report.notification_id} [{report.status.value}] "
        f"candidates={report.candidates} stored={report.stored} "
        f"skipped={report.skipped} invalid={report.invalid} cursor={report.cursor}"
    )
    if report.error_message:
        line += f" error={report.error_message}"
    print(line)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Gmail Sync - Reconcile push notifications into stored emails"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    add_user_parser = subparsers.add_parser("add-user", help="Provision a user")
    add_user_parser.add_argument("user_id")
    add_user_parser.add_argument("email")
    add_user_parser.add_argument("--cursor", help="Initial history cursor")

    authorize_parser = subparsers.add_parser(
        "authorize", help="Run the OAuth consent flow and cache a user's token"
    )
    authorize_parser.add_argument("user_id")

    watch_parser = subparsers.add_parser("watch", help="Start Gmail push notifications for a user")
    watch_parser.add_argument("user_id")

    enqueue_parser = subparsers.add_parser("enqueue", help="Enqueue a notification")
    enqueue_parser.add_argument("email")
    enqueue_parser.add_argument("history_id")

    push_parser = subparsers.add_parser(
        "push", help="Enqueue a Pub/Sub push body read from a file or stdin"
    )
    push_parser.add_argument("path", nargs="?", default="-", help="JSON file, '-' for stdin")

    process_parser = subparsers.add_parser("process", help="Process pending notifications")
    process_parser.add_argument("--id", dest="notification_id", help="Process one notification")
    process_parser.add_argument(
        "--limit", type=int, default=None, help="Cap notifications processed when draining"
    )

    subparsers.add_parser("status", help="Show notification counts by status")
    subparsers.add_parser("retry", help="Reset failed notifications to pending")

    reap_parser = subparsers.add_parser("reap", help="Fail notifications stuck in processing")
    reap_parser.add_argument(
        "--older-than",
        type=float,
        default=None,
        dest="older_than",
        help="Seconds in processing before a notification counts as stuck",
    )

    list_parser = subparsers.add_parser("list-emails", help="List stored emails for a user")
    list_parser.add_argument("user_id")
    list_parser.add_argument("--limit", type=int, default=20)

    return parser


def _validate_args(args: argparse.Namespace) -> None:
    """Reject negative limits and thresholds."""
    if getattr(args, "limit", None) is not None and args.limit < 0:
        print("Error: --limit must be non-negative", file=sys.stderr)
        sys.exit(1)
    if getattr(args, "older_than", None) is not None and args.older_than <= 0:
        print("Error: --older-than must be positive", file=sys.stderr)
        sys.exit(1)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)
    _validate_args(args)

    settings = GmailSyncSettings()
    setup_logging(settings.log_level)

    if args.command == "authorize":
        authorize_user(settings.credentials_path, settings.token_dir, args.user_id)
        print(f"Authorized {args.user_id}")
        return

    sync = GmailSync(settings=settings)

    try:
        if args.command == "add-user":
            user = sync.add_user(args.user_id, args.email, args.cursor)
            print(f"User {user.id} <{user.email}> cursor={user.cursor}")

        elif args.command == "watch":
            user = sync.start_watch(args.user_id)
            print(f"Watching {user.email}, cursor={user.cursor}")

        elif args.command == "enqueue":
            notification = sync.enqueue_notification(args.email, args.history_id)
            if notification is None:
                print("Notification dropped (invalid input)", file=sys.stderr)
                sys.exit(1)
            print(f"Enqueued {notification.id}")

        elif args.command == "push":
            body = sys.stdin.read() if args.path == "-" else Path(args.path).read_text(encoding="utf-8")
            notification = sync.handle_push(body)
            print(f"Enqueued {notification.id}" if notification else "Push dropped")

        elif args.command == "process":
            if args.notification_id:
                print_report(sync.process(args.notification_id))
            else:
                reports = sync.drain(limit=args.limit)
                for report in reports:
                    print_report(report)
                print(f"\nProcessed {len(reports)} notifications")

        elif args.command == "status":
            counts = sync.get_status()
            print("\nNotification counts by status:")
            for status, count in sorted(counts.items()):
                print(f"  {status}: {count}")

        elif args.command == "retry":
            count = sync.retry_errors()
            print(f"\nReset {count} failed notifications to pending")

        elif args.command == "reap":
            count = sync.reap_stale(args.older_than)
            print(f"\nReaped {count} stuck notifications")

        elif args.command == "list-emails":
            for record in sync.list_emails(args.user_id, limit=args.limit):
                print(
                    json.dumps(
                        {
                            "messageId": record.message_id,
                            "date": record.date.isoformat() if record.date else None,
                            "from": record.sender,
                            "subject": record.subject,
                            "attachments": len(record.attachments),
                        }
                    )
                )

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        sync.close()


if __name__ == "__main__":
    main()
