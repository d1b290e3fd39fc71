#!/usr/bin/env python3
"""Run one reminder scan followed by one dispatch pass against the configured store."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from minifleet.config import get_settings
from minifleet.notifier import create_email_sender, create_sms_sender
from minifleet.reminders import ReminderDispatcher, ReminderScanner
from minifleet.store_backends import create_fleet_store

logger = logging.getLogger("run_reminder_cycle")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scan maintenance schedules and deliver pending reminders.")
    parser.add_argument("--scan-only", action="store_true", help="Create reminders without delivering them.")
    parser.add_argument("--dispatch-only", action="store_true", help="Deliver pending reminders without scanning.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    args = parser.parse_args()
    if args.scan_only and args.dispatch_only:
        parser.error("--scan-only and --dispatch-only are mutually exclusive")
    return args


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = get_settings()
    if settings.store_backend == "inmemory":
        logger.warning("STORE_BACKEND=inmemory; this cycle runs against an empty store")
    store = create_fleet_store(backend=settings.store_backend, database_url=settings.database_url)

    summary: dict[str, int] = {}
    if not args.dispatch_only:
        created = ReminderScanner(store=store, settings=settings).scan()
        summary["reminders_created"] = len(created)

    if not args.scan_only:
        dispatcher = ReminderDispatcher(
            store=store,
            settings=settings,
            email_sender=create_email_sender(settings),
            sms_sender=create_sms_sender(settings),
        )
        outcomes = dispatcher.dispatch()
        summary["reminders_sent"] = sum(1 for outcome in outcomes if outcome.status == "sent")
        summary["reminders_failed"] = sum(1 for outcome in outcomes if outcome.status == "failed")

    print(json.dumps(summary, sort_keys=True))
    return 1 if summary.get("reminders_failed") else 0


if __name__ == "__main__":
    raise SystemExit(main())
