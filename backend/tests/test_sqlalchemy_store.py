from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy.exc import IntegrityError

from minifleet.errors import CompanyNotFoundError, DuplicateScheduleError, VehicleNotFoundError
from minifleet.store import InMemoryFleetStore, SubscriptionWrite
from minifleet.store_backends import SqlAlchemyFleetStore, create_fleet_store

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _store(tmp_path: Path) -> SqlAlchemyFleetStore:
    return SqlAlchemyFleetStore(f"sqlite:///{tmp_path / 'minifleet.db'}")


def _schedule(store: SqlAlchemyFleetStore, *, status: str = "ACTIVE"):
    company = store.create_company("Acme Trucking", subscription_status=status)
    vehicle = store.add_vehicle(company.company_id, make="Ford", model="Transit", year=2021, current_odometer=40000)
    template = store.add_template(name="Oil Change", interval_months=6, interval_miles=5000)
    return store.create_schedule(
        company_id=company.company_id,
        vehicle_id=vehicle.vehicle_id,
        template_id=template.template_id,
        last_service_date=date(2025, 9, 4),
        last_service_odometer=40000,
        next_due_date=date(2026, 3, 4),
        next_due_odometer=45000,
    )


def _create_reminder(store: SqlAlchemyFleetStore, schedule, *, channel: str = "EMAIL", now: datetime = NOW):
    return store.create_reminder_if_absent(
        company_id=schedule.company_id,
        schedule_id=schedule.schedule_id,
        vehicle_id=schedule.vehicle_id,
        due_date=schedule.next_due_date,
        channel=channel,  # type: ignore[arg-type]
        now=now,
    )


def test_create_fleet_store_selects_backend(tmp_path: Path) -> None:
    assert isinstance(create_fleet_store(backend="inmemory", database_url=""), InMemoryFleetStore)
    assert isinstance(
        create_fleet_store(backend="sqlite", database_url=f"sqlite:///{tmp_path / 'x.db'}"),
        SqlAlchemyFleetStore,
    )
    with pytest.raises(RuntimeError):
        create_fleet_store(backend="mongodb", database_url="")


def test_partial_unique_index_blocks_duplicate_active_reminders(tmp_path: Path) -> None:
    store = _store(tmp_path)
    schedule = _schedule(store)

    first = _create_reminder(store, schedule)
    assert first is not None
    assert _create_reminder(store, schedule) is None
    assert _create_reminder(store, schedule, channel="SMS") is not None

    store.mark_reminder_failed(first.reminder_id, error_message="smtp down")
    replacement = _create_reminder(store, schedule)

    assert replacement is not None
    statuses = sorted(reminder.status for reminder in store.list_reminders())
    assert statuses == ["FAILED", "PENDING", "PENDING"]


def test_reminder_for_missing_schedule_raises_instead_of_deduplicating(tmp_path: Path) -> None:
    store = _store(tmp_path)
    schedule = _schedule(store)

    with pytest.raises(IntegrityError):
        store.create_reminder_if_absent(
            company_id=schedule.company_id,
            schedule_id="sch_deleted",
            vehicle_id=schedule.vehicle_id,
            due_date=schedule.next_due_date,
            channel="EMAIL",
            now=NOW,
        )

    assert store.list_reminders() == []
    assert _create_reminder(store, schedule) is not None


def test_sent_reminders_keep_blocking(tmp_path: Path) -> None:
    store = _store(tmp_path)
    schedule = _schedule(store)
    reminder = _create_reminder(store, schedule)
    store.mark_reminder_sent(reminder.reminder_id, sent_at=NOW)

    assert _create_reminder(store, schedule) is None
    sent = store.list_reminders()[0]
    assert sent.status == "SENT"
    assert sent.sent_at == NOW


def test_claims_respect_entitlement_and_lease(tmp_path: Path) -> None:
    store = _store(tmp_path)
    active = _schedule(store)
    canceled = _schedule(store, status="CANCELED")
    _create_reminder(store, active)
    _create_reminder(store, canceled)
    lease = timedelta(minutes=15)

    claimed = store.claim_pending_reminders(company_statuses={"ACTIVE", "TRIAL"}, limit=10, now=NOW, lease=lease)
    assert [item.schedule_id for item in claimed] == [active.schedule_id]
    assert claimed[0].status == "IN_PROGRESS"
    assert claimed[0].claimed_at == NOW

    assert store.claim_pending_reminders(
        company_statuses={"ACTIVE"}, limit=10, now=NOW + timedelta(minutes=5), lease=lease
    ) == []
    reclaimed = store.claim_pending_reminders(
        company_statuses={"ACTIVE"}, limit=10, now=NOW + timedelta(minutes=20), lease=lease
    )
    assert [item.reminder_id for item in reclaimed] == [claimed[0].reminder_id]


def test_claim_limit(tmp_path: Path) -> None:
    store = _store(tmp_path)
    schedule = _schedule(store)
    _create_reminder(store, schedule, channel="EMAIL")
    _create_reminder(store, schedule, channel="SMS", now=NOW + timedelta(seconds=1))

    first = store.claim_pending_reminders(company_statuses={"ACTIVE"}, limit=1, now=NOW, lease=timedelta(minutes=15))
    second = store.claim_pending_reminders(company_statuses={"ACTIVE"}, limit=1, now=NOW, lease=timedelta(minutes=15))

    assert [item.channel for item in first] == ["EMAIL"]
    assert [item.channel for item in second] == ["SMS"]


def test_apply_subscription_state_creates_then_updates(tmp_path: Path) -> None:
    store = _store(tmp_path)
    company = store.create_company("Acme Trucking")
    plan = store.create_plan(external_price_id="price_basic", name="Basic", price_cents=2900, interval="month")
    write = SubscriptionWrite(
        status="ACTIVE",
        plan_id=plan.plan_id,
        external_subscription_id="sub_1",
        current_period_start=NOW,
        current_period_end=NOW + timedelta(days=30),
        cancel_at_period_end=False,
    )

    created, was_created = store.apply_subscription_state(company.company_id, write, now=NOW)
    unchanged, second_created = store.apply_subscription_state(company.company_id, write, now=NOW + timedelta(hours=1))

    assert was_created is True
    assert second_created is False
    assert unchanged.subscription_id == created.subscription_id
    assert unchanged.updated_at == NOW

    refreshed = store.get_company(company.company_id)
    assert refreshed.subscription_status == "ACTIVE"
    assert refreshed.plan_id == plan.plan_id
    assert store.find_company_by_external_subscription_id("sub_1").company_id == company.company_id

    with pytest.raises(CompanyNotFoundError):
        store.apply_subscription_state("cmp_missing", write, now=NOW)


def test_create_plan_is_idempotent_per_price(tmp_path: Path) -> None:
    store = _store(tmp_path)

    first = store.create_plan(external_price_id="price_basic", name="Basic", price_cents=2900, interval="month")
    second = store.create_plan(external_price_id="price_basic", name="Other", price_cents=1, interval="year")

    assert second.plan_id == first.plan_id
    assert store.get_plan_by_price_id("price_basic").name == "Basic"


def test_schedules_and_service_events(tmp_path: Path) -> None:
    store = _store(tmp_path)
    schedule = _schedule(store)

    with pytest.raises(DuplicateScheduleError):
        store.create_schedule(
            company_id=schedule.company_id,
            vehicle_id=schedule.vehicle_id,
            template_id=schedule.template_id,
            last_service_date=None,
            last_service_odometer=None,
            next_due_date=None,
            next_due_odometer=None,
        )

    event, updated = store.record_service_event(
        company_id=schedule.company_id,
        vehicle_id=schedule.vehicle_id,
        template_id=schedule.template_id,
        performed_at=date(2026, 3, 2),
        odometer_at_service=44800,
        performed_by=None,
        notes="synthetic oil",
        next_due_date=date(2026, 9, 2),
        next_due_odometer=49800,
    )

    assert event.notes == "synthetic oil"
    assert updated.schedule_id == schedule.schedule_id
    assert updated.next_due_date == date(2026, 9, 2)
    assert store.get_vehicle(schedule.vehicle_id).current_odometer == 44800

    with pytest.raises(VehicleNotFoundError):
        store.record_service_event(
            company_id=schedule.company_id,
            vehicle_id="veh_missing",
            template_id=schedule.template_id,
            performed_at=date(2026, 3, 2),
            odometer_at_service=1,
            performed_by=None,
            notes=None,
            next_due_date=None,
            next_due_odometer=None,
        )


def test_due_schedules_filter_by_company_status(tmp_path: Path) -> None:
    store = _store(tmp_path)
    active = _schedule(store)
    _schedule(store, status="UNPAID")

    assert [item.schedule_id for item in store.list_due_schedules({"ACTIVE", "TRIAL"})] == [active.schedule_id]


def test_billing_events_are_recorded_once(tmp_path: Path) -> None:
    store = _store(tmp_path)

    record, created = store.record_billing_event(event_id="evt_1", event_type="invoice.paid", payload_json="{}", now=NOW)
    again, created_again = store.record_billing_event(
        event_id="evt_1", event_type="invoice.paid", payload_json="{}", now=NOW
    )
    store.mark_billing_event("evt_1", status="failed", error_message="boom", now=NOW)

    assert created is True
    assert created_again is False
    assert again.event_id == record.event_id
    failed = store.list_billing_events("failed")
    assert [(item.event_id, item.error_message) for item in failed] == [("evt_1", "boom")]
    assert failed[0].payload() == {}
