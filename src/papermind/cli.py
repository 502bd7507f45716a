"""CLI interface for local testing and administration."""

import argparse
import asyncio
import sys
from pathlib import Path

from . import db
from .config import load_config
from .logging_setup import setup_logging
from .paperless_client import PaperlessClient
from .processor import (
    get_queue_stats,
    process_all_pending,
    process_queue_item,
    reset_stuck_items,
    retry_failed_items,
)
from .scanner import ScanResult, scan_due_instances, scan_instance
from .scheduler import run_daemon

AUTO_APPLY_FIELDS = ("title", "correspondent", "document_type", "tags", "date")


def _load(args):
    return load_config(Path(args.config) if args.config else None)


def _parse_tag_ids(value: str | None) -> list[int]:
    if not value:
        return []
    return [int(part) for part in value.split(",") if part.strip()]


def _print_scan_result(result: ScanResult) -> None:
    if result.error:
        print(f"[{result.instance_id}] {result.instance_name}: error - {result.error}")
    else:
        print(
            f"[{result.instance_id}] {result.instance_name}: "
            f"{result.documents_queued} queued, "
            f"{result.documents_already_processed} already processed, "
            f"{result.documents_already_queued} already queued"
        )


def cmd_init(args):
    """Initialize the database."""
    config = _load(args)
    db.init_db(config.db_path)
    print(f"Database initialized at {config.db_path}")


def cmd_instance_add(args):
    config = _load(args)
    apply_fields = {f.strip() for f in (args.auto_apply or "").split(",") if f.strip()}
    unknown = apply_fields - set(AUTO_APPLY_FIELDS)
    if unknown:
        print(f"Error: unknown auto-apply field(s): {', '.join(sorted(unknown))}", file=sys.stderr)
        sys.exit(1)

    with db.get_db(config.db_path) as conn:
        instance_id = db.create_instance(
            conn,
            name=args.name,
            api_url=args.url,
            api_token=args.token,
            owner_id=args.owner or "",
            scan_cron_expression=args.cron or config.scheduler.default_scan_cron,
            auto_process_enabled=args.auto,
            import_filter_tags=_parse_tag_ids(args.filter_tags),
            default_ai_bot_id=args.bot,
            **{f"auto_apply_{field}": field in apply_fields for field in AUTO_APPLY_FIELDS},
        )
    print(f"Instance created: {instance_id}")


def cmd_instance_list(args):
    config = _load(args)
    with db.get_db(config.db_path) as conn:
        instances = db.list_instances(conn)

    if not instances:
        print("No instances configured")
        return

    for i in instances:
        auto = "auto" if i.auto_process_enabled else "manual"
        next_scan = db.format_ts(i.next_scan_at) or "-"
        print(f"[{i.id}] {i.name:20} {auto:6} {i.scan_cron_expression:15} next: {next_scan}")


def cmd_instance_show(args):
    config = _load(args)
    with db.get_db(config.db_path) as conn:
        instance = db.get_instance(conn, args.instance_id)

    if not instance:
        print(f"Instance {args.instance_id} not found", file=sys.stderr)
        sys.exit(1)

    applied = [f for f in AUTO_APPLY_FIELDS if getattr(instance, f"auto_apply_{f}")]
    print(f"Instance ID: {instance.id}")
    print(f"Name: {instance.name}")
    print(f"URL: {instance.api_url}")
    print(f"Owner: {instance.owner_id or '-'}")
    print(f"Cron: {instance.scan_cron_expression}")
    print(f"Auto-process: {'yes' if instance.auto_process_enabled else 'no'}")
    print(f"Default bot: {instance.default_ai_bot_id or '-'}")
    print(f"Filter tags: {', '.join(map(str, instance.import_filter_tags or [])) or '-'}")
    print(f"Auto-apply: {', '.join(applied) or '-'}")
    print(f"Last scan: {db.format_ts(instance.last_scan_at) or '-'}")
    print(f"Next scan: {db.format_ts(instance.next_scan_at) or '-'}")


def cmd_instance_set(args):
    config = _load(args)
    updates = {}
    if args.cron is not None:
        updates["scan_cron_expression"] = args.cron
    if args.auto is not None:
        updates["auto_process_enabled"] = args.auto
    if args.bot is not None:
        updates["default_ai_bot_id"] = args.bot
    if args.filter_tags is not None:
        updates["import_filter_tags"] = _parse_tag_ids(args.filter_tags)

    if not updates:
        print("Nothing to update", file=sys.stderr)
        sys.exit(1)

    with db.get_db(config.db_path) as conn:
        if db.get_instance(conn, args.instance_id) is None:
            print(f"Instance {args.instance_id} not found", file=sys.stderr)
            sys.exit(1)
        db.update_instance(conn, args.instance_id, **updates)
    print(f"Instance {args.instance_id} updated")


def cmd_instance_check(args):
    config = _load(args)
    with db.get_db(config.db_path) as conn:
        instance = db.get_instance(conn, args.instance_id)

    if not instance:
        print(f"Instance {args.instance_id} not found", file=sys.stderr)
        sys.exit(1)

    client = PaperlessClient.for_instance(instance, timeout=config.paperless.request_timeout)
    if asyncio.run(client.check_connection()):
        print(f"Connected to {instance.api_url}")
    else:
        print(f"Could not connect to {instance.api_url}", file=sys.stderr)
        sys.exit(1)


def cmd_bot_add(args):
    config = _load(args)
    with db.get_db(config.db_path) as conn:
        bot_id = db.create_ai_bot(
            conn,
            name=args.name,
            model=args.model,
            api_url=args.url,
            api_key=args.key or "",
            system_prompt=args.system_prompt or "",
        )
    print(f"AI bot created: {bot_id}")


def cmd_bot_list(args):
    config = _load(args)
    with db.get_db(config.db_path) as conn:
        bots = db.list_ai_bots(conn)

    if not bots:
        print("No AI bots configured")
        return

    for b in bots:
        print(f"[{b.id}] {b.name:20} {b.model:25} {b.api_url}")


def cmd_scan(args):
    config = _load(args)
    if args.instance is not None:
        results = [asyncio.run(scan_instance(config, args.instance))]
    else:
        results = asyncio.run(scan_due_instances(config))

    if not results:
        print("No instances due for scanning")
    for result in results:
        _print_scan_result(result)


def cmd_process(args):
    config = _load(args)
    if args.item is not None:
        results = [asyncio.run(process_queue_item(config, args.item))]
    else:
        results = asyncio.run(process_all_pending(config))

    if not results:
        print("No pending items")
        return

    for r in results:
        status = "ok" if r.success else f"failed: {r.error}"
        print(f"Queue item {r.queue_item_id}: {status}")


def cmd_reset_stuck(args):
    config = _load(args)
    count = reset_stuck_items(config)
    print(f"Reset {count} stuck item(s)")


def cmd_stats(args):
    config = _load(args)
    stats = get_queue_stats(config, instance_id=args.instance)
    for status, count in stats.items():
        print(f"{status:12} {count}")


def cmd_queue(args):
    config = _load(args)
    with db.get_db(config.db_path) as conn:
        entries = db.list_queue_entries(
            conn, instance_id=args.instance, status=args.status, limit=args.limit,
        )

    if not entries:
        print("No queue items found")
        return

    for e in entries:
        error = f"  {e.last_error[:50]}" if e.last_error else ""
        print(
            f"[{e.id}] {e.status:10} instance={e.instance_id} doc={e.remote_document_id} "
            f"attempts={e.attempts}/{e.max_attempts}{error}"
        )


def cmd_retry(args):
    config = _load(args)
    count = retry_failed_items(config, args.instance, queue_item_id=args.item)
    print(f"Re-queued {count} failed item(s)")


def cmd_daemon(args):
    config = _load(args)
    setup_logging(config, verbose=args.verbose, daemon_mode=True)
    run_daemon(config)


def main():
    parser = argparse.ArgumentParser(description="papermind CLI")
    parser.add_argument("-c", "--config", help="Path to config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose (DEBUG) logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # init
    subparsers.add_parser("init", help="Initialize database")

    # instance (with subparsers)
    instance_parser = subparsers.add_parser("instance", help="Paperless instance management")
    instance_subparsers = instance_parser.add_subparsers(dest="instance_action", required=True)

    instance_add_parser = instance_subparsers.add_parser("add", help="Add an instance")
    instance_add_parser.add_argument("name", help="Instance name")
    instance_add_parser.add_argument("--url", required=True, help="Paperless base URL")
    instance_add_parser.add_argument("--token", required=True, help="Paperless API token")
    instance_add_parser.add_argument("--owner", help="Owner user ID")
    instance_add_parser.add_argument("--cron", help="Scan cron expression")
    instance_add_parser.add_argument("--auto", action="store_true", help="Enable auto-processing")
    instance_add_parser.add_argument("--bot", type=int, help="Default AI bot ID")
    instance_add_parser.add_argument("--filter-tags", help="Comma-separated tag IDs required for import")
    instance_add_parser.add_argument(
        "--auto-apply", help=f"Comma-separated fields to auto-apply ({', '.join(AUTO_APPLY_FIELDS)})",
    )

    instance_subparsers.add_parser("list", help="List instances")

    instance_show_parser = instance_subparsers.add_parser("show", help="Show instance details")
    instance_show_parser.add_argument("instance_id", type=int, help="Instance ID")

    instance_set_parser = instance_subparsers.add_parser("set", help="Update instance settings")
    instance_set_parser.add_argument("instance_id", type=int, help="Instance ID")
    instance_set_parser.add_argument("--cron", help="Scan cron expression")
    instance_set_parser.add_argument("--auto", action=argparse.BooleanOptionalAction, help="Auto-processing")
    instance_set_parser.add_argument("--bot", type=int, help="Default AI bot ID")
    instance_set_parser.add_argument("--filter-tags", help="Comma-separated tag IDs (empty clears)")

    instance_check_parser = instance_subparsers.add_parser("check", help="Test the Paperless connection")
    instance_check_parser.add_argument("instance_id", type=int, help="Instance ID")

    # bot (with subparsers)
    bot_parser = subparsers.add_parser("bot", help="AI bot management")
    bot_subparsers = bot_parser.add_subparsers(dest="bot_action", required=True)

    bot_add_parser = bot_subparsers.add_parser("add", help="Add an AI bot")
    bot_add_parser.add_argument("name", help="Bot name")
    bot_add_parser.add_argument("--model", required=True, help="Model identifier")
    bot_add_parser.add_argument("--url", required=True, help="OpenAI-compatible API base URL")
    bot_add_parser.add_argument("--key", help="API key")
    bot_add_parser.add_argument("--system-prompt", help="System prompt")

    bot_subparsers.add_parser("list", help="List AI bots")

    # scan
    scan_parser = subparsers.add_parser("scan", help="Scan instances for new documents")
    scan_group = scan_parser.add_mutually_exclusive_group()
    scan_group.add_argument("--instance", type=int, help="Scan one instance")
    scan_group.add_argument("--due", action="store_true", help="Scan all due instances (default)")

    # process
    process_parser = subparsers.add_parser("process", help="Process queued documents")
    process_parser.add_argument("--item", type=int, help="Process one queue item")

    # reset-stuck
    subparsers.add_parser("reset-stuck", help="Reset items stuck in processing")

    # stats
    stats_parser = subparsers.add_parser("stats", help="Show queue statistics")
    stats_parser.add_argument("--instance", type=int, help="Limit to one instance")

    # queue
    queue_parser = subparsers.add_parser("queue", help="List queue items")
    queue_parser.add_argument("--instance", type=int, help="Filter by instance")
    queue_parser.add_argument("-s", "--status", choices=db.QueueStatus.ALL, help="Filter by status")
    queue_parser.add_argument("-n", "--limit", type=int, default=20, help="Max results")

    # retry
    retry_parser = subparsers.add_parser("retry", help="Retry failed queue items")
    retry_parser.add_argument("--instance", type=int, required=True, help="Instance ID")
    retry_parser.add_argument("--item", type=int, help="Retry one queue item")

    # daemon
    subparsers.add_parser("daemon", help="Run the scan scheduler")

    args = parser.parse_args()

    # Daemon sets up its own logging with timestamps
    if args.command not in ("init", "daemon"):
        config = _load(args)
        setup_logging(config, verbose=args.verbose)

    commands = {
        "init": cmd_init,
        "scan": cmd_scan,
        "process": cmd_process,
        "reset-stuck": cmd_reset_stuck,
        "stats": cmd_stats,
        "queue": cmd_queue,
        "retry": cmd_retry,
        "daemon": cmd_daemon,
    }

    if args.command == "instance":
        instance_commands = {
            "add": cmd_instance_add,
            "list": cmd_instance_list,
            "show": cmd_instance_show,
            "set": cmd_instance_set,
            "check": cmd_instance_check,
        }
        instance_commands[args.instance_action](args)
    elif args.command == "bot":
        bot_commands = {
            "add": cmd_bot_add,
            "list": cmd_bot_list,
        }
        bot_commands[args.bot_action](args)
    else:
        commands[args.command](args)


if __name__ == "__main__":
    main()
