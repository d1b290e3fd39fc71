from __future__ import annotations

from datetime import date

import pytest

from minifleet.errors import DuplicateScheduleError, TemplateNotFoundError, VehicleNotFoundError
from minifleet.maintenance import MaintenanceService
from minifleet.store import InMemoryFleetStore


def _setup() -> tuple[InMemoryFleetStore, MaintenanceService, str, str, str]:
    store = InMemoryFleetStore()
    company = store.create_company("Acme Trucking")
    vehicle = store.add_vehicle(company.company_id, make="Ford", model="Transit", year=2021, current_odometer=40000)
    template = store.add_template(name="Oil Change", interval_months=6, interval_miles=5000)
    return store, MaintenanceService(store=store), company.company_id, vehicle.vehicle_id, template.template_id


def test_record_service_event_creates_schedule_and_bumps_odometer() -> None:
    store, service, company_id, vehicle_id, template_id = _setup()

    event, schedule = service.record_service_event(
        company_id,
        vehicle_id=vehicle_id,
        template_id=template_id,
        performed_at=date(2026, 1, 31),
        odometer_at_service=41000,
        performed_by="Shop A",
    )

    assert event.performed_by == "Shop A"
    assert schedule.last_service_date == date(2026, 1, 31)
    assert schedule.next_due_date == date(2026, 7, 31)
    assert schedule.next_due_odometer == 46000
    assert store.get_vehicle(vehicle_id).current_odometer == 41000


def test_record_service_event_updates_existing_schedule() -> None:
    store, service, company_id, vehicle_id, template_id = _setup()
    created = service.create_schedule(
        company_id,
        vehicle_id=vehicle_id,
        template_id=template_id,
        last_service_date=date(2025, 6, 1),
    )

    _, schedule = service.record_service_event(
        company_id,
        vehicle_id=vehicle_id,
        template_id=template_id,
        performed_at=date(2026, 2, 1),
        odometer_at_service=39000,
    )

    assert schedule.schedule_id == created.schedule_id
    assert schedule.next_due_date == date(2026, 8, 1)
    assert store.get_vehicle(vehicle_id).current_odometer == 40000


def test_create_schedule_defaults_to_today_and_current_odometer() -> None:
    _, service, company_id, vehicle_id, template_id = _setup()

    schedule = service.create_schedule(
        company_id,
        vehicle_id=vehicle_id,
        template_id=template_id,
        today=date(2026, 3, 1),
    )

    assert schedule.last_service_date == date(2026, 3, 1)
    assert schedule.last_service_odometer == 40000
    assert schedule.next_due_date == date(2026, 9, 1)
    assert schedule.next_due_odometer == 45000


def test_create_schedule_rejects_duplicates() -> None:
    _, service, company_id, vehicle_id, template_id = _setup()
    service.create_schedule(company_id, vehicle_id=vehicle_id, template_id=template_id)

    with pytest.raises(DuplicateScheduleError):
        service.create_schedule(company_id, vehicle_id=vehicle_id, template_id=template_id)


def test_other_company_records_are_not_found() -> None:
    store, service, _, vehicle_id, _ = _setup()
    other = store.create_company("Other Fleet")
    private_template = store.add_template(
        name="Private",
        interval_months=3,
        interval_miles=None,
        company_id=other.company_id,
    )
    own_vehicle = store.add_vehicle(other.company_id, make="Ram", model="ProMaster", year=2022)

    with pytest.raises(VehicleNotFoundError):
        service.create_schedule(other.company_id, vehicle_id=vehicle_id, template_id=private_template.template_id)

    first_company = store.get_vehicle(vehicle_id).company_id
    with pytest.raises(TemplateNotFoundError):
        service.create_schedule(first_company, vehicle_id=vehicle_id, template_id=private_template.template_id)

    schedule = service.create_schedule(
        other.company_id,
        vehicle_id=own_vehicle.vehicle_id,
        template_id=private_template.template_id,
        today=date(2026, 3, 1),
    )
    assert schedule.next_due_date == date(2026, 6, 1)
