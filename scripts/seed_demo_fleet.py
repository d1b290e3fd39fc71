#!/usr/bin/env python3
"""Seed a demo company, fleet, and maintenance schedules into the configured store."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date, datetime, timezone
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from dateutil.relativedelta import relativedelta

from minifleet.config import get_settings
from minifleet.maintenance import MaintenanceService
from minifleet.session_tokens import create_session_token, encode_session_token
from minifleet.store_backends import create_fleet_store

logger = logging.getLogger("seed_demo_fleet")

DEFAULT_TEMPLATES = (
    ("Oil Change", 6, 5000),
    ("Tire Rotation", 6, 7500),
    ("Brake Inspection", 12, 15000),
    ("Annual Safety Inspection", 12, None),
)

DEMO_VEHICLES = (
    ("Ford", "Transit", 2021, 48210),
    ("Chevrolet", "Express", 2019, 91544),
    ("Ram", "ProMaster", 2022, 22030),
)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed a demo MiniFleet company.")
    parser.add_argument("--company-name", default="Demo Fleet Co")
    parser.add_argument("--owner-email", default="owner@demo-fleet.test")
    parser.add_argument("--manager-email", default="manager@demo-fleet.test")
    parser.add_argument("--reminder-phone", default=None, help="E.164 number that receives SMS reminders.")
    parser.add_argument("--status", default="TRIAL", choices=["TRIAL", "ACTIVE", "PAST_DUE", "UNPAID", "CANCELED"])
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings = get_settings()
    if settings.store_backend == "inmemory":
        logger.warning("STORE_BACKEND=inmemory; seeded data disappears when this script exits")
    store = create_fleet_store(backend=settings.store_backend, database_url=settings.database_url)

    company = store.create_company(
        args.company_name,
        subscription_status=args.status,
        reminder_phone=args.reminder_phone,
    )
    owner = store.add_user(company.company_id, email=args.owner_email, role="OWNER", name="Demo Owner")
    store.add_user(company.company_id, email=args.manager_email, role="MANAGER", name="Demo Manager")

    templates = [
        store.add_template(name=name, interval_months=months, interval_miles=miles)
        for name, months, miles in DEFAULT_TEMPLATES
    ]

    maintenance = MaintenanceService(store=store)
    today = datetime.now(timezone.utc).date()
    schedule_count = 0
    for index, (make, model, year, odometer) in enumerate(DEMO_VEHICLES):
        vehicle = store.add_vehicle(company.company_id, make=make, model=model, year=year, current_odometer=odometer)
        for template in templates:
            # Stagger last service dates so some schedules fall inside the reminder window.
            months_back = (template.interval_months or 12) - index
            last_service: date = today - relativedelta(months=months_back)
            maintenance.create_schedule(
                company.company_id,
                vehicle_id=vehicle.vehicle_id,
                template_id=template.template_id,
                last_service_date=last_service,
            )
            schedule_count += 1

    token = encode_session_token(
        create_session_token(
            user_id=owner.user_id,
            company_id=company.company_id,
            role="OWNER",
            ttl_minutes=settings.session_ttl_minutes,
        ),
        secret=settings.session_secret,
    )
    print(
        json.dumps(
            {
                "company_id": company.company_id,
                "owner_user_id": owner.user_id,
                "owner_session_token": token,
                "vehicles": len(DEMO_VEHICLES),
                "schedules": schedule_count,
            },
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
