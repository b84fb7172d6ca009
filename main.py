#!/usr/bin/env python3
"""CLI: python main.py [mcp | serve | sync | schedule | backfill | stop-backfill | load-older-chats | reindex-contacts | check]."""
import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

COMMANDS = ("mcp", "serve", "sync", "schedule", "backfill", "stop-backfill", "load-older-chats", "reindex-contacts", "check")


async def _with_orchestrator(run):
    from beeper_sync.sync import SyncOrchestrator

    orchestrator = SyncOrchestrator()
    try:
        return await run(orchestrator)
    finally:
        await orchestrator.aclose()


def cmd_sync(args: argparse.Namespace) -> int:
    result = asyncio.run(
        _with_orchestrator(lambda o: o.run_sync(args.source, force_full=args.full, force_message_sync=args.messages))
    )
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.success or result.transient else 1


def cmd_schedule(args: argparse.Namespace) -> int:
    from beeper_sync.scheduler import SyncScheduler

    async def run(orchestrator):
        scheduler = SyncScheduler(orchestrator, interval_seconds=args.interval * 60 if args.interval else None)
        await scheduler.run_forever()

    try:
        asyncio.run(_with_orchestrator(run))
    except KeyboardInterrupt:
        pass
    return 0


def cmd_backfill(args: argparse.Namespace) -> int:
    stop_at = datetime.fromisoformat(args.stop_at) if args.stop_at else None
    result = asyncio.run(
        _with_orchestrator(
            lambda o: o.run_historical_backfill(
                stop_at=stop_at,
                days=args.days,
                load_older_chats=not args.skip_chats,
            )
        )
    )
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.success else 1


def cmd_stop_backfill(args: argparse.Namespace) -> int:
    from beeper_sync.cursor_store import request_backfill_stop

    request_backfill_stop()
    print("Historical backfill stop requested.")
    return 0


def cmd_load_older_chats(args: argparse.Namespace) -> int:
    result = asyncio.run(_with_orchestrator(lambda o: o.load_older_chats()))
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def cmd_reindex_contacts(args: argparse.Namespace) -> int:
    from beeper_sync.database import db_session
    from beeper_sync.reconcile import backfill_contact_phone_index

    with db_session() as db:
        indexed = backfill_contact_phone_index(db)
    print(f"Indexed phones for {indexed} contacts.")
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    from beeper_sync.consistency import print_report, run_consistency_checks

    results = run_consistency_checks()
    print_report(results)
    return 0 if all(r.error_count == 0 for r in results) else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Lilith Beeper")
    parser.add_argument("command", nargs="?", default="mcp", help=" | ".join(COMMANDS))
    parser.add_argument("--source", default="manual", help="Sync trigger source: cron | manual | page_load | full")
    parser.add_argument("--full", action="store_true", help="Ignore the stored cursor and resync from the newest page")
    parser.add_argument("--messages", action="store_true", help="Sync messages of every chat, not only changed ones")
    parser.add_argument("--interval", type=int, default=None, help="Scheduler interval in minutes (default from settings)")
    parser.add_argument("--days", type=int, default=None, help="Backfill: stop after this many days of history")
    parser.add_argument("--stop-at", default=None, help="Backfill: ISO date to stop at")
    parser.add_argument("--skip-chats", action="store_true", help="Backfill: do not page older chats first")
    args = parser.parse_args()

    handlers = {
        "sync": cmd_sync,
        "schedule": cmd_schedule,
        "backfill": cmd_backfill,
        "stop-backfill": cmd_stop_backfill,
        "load-older-chats": cmd_load_older_chats,
        "reindex-contacts": cmd_reindex_contacts,
        "check": cmd_check,
    }
    if args.command in handlers:
        return handlers[args.command](args)
    if args.command not in ("mcp", "serve"):
        parser.error(f"unknown command {args.command!r}")
    # mcp_server.__main__ reads "serve" from argv itself
    from mcp_server.__main__ import main as mcp_main
    return mcp_main()


if __name__ == "__main__":
    sys.exit(main())
