from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from .due_dates import next_due
from .errors import TemplateNotFoundError, VehicleNotFoundError
from .store import FleetStore, ScheduleRecord, ServiceEventRecord, TemplateRecord, VehicleRecord

logger = logging.getLogger(__name__)


class MaintenanceService:
    """Service logging and schedule creation scoped to one company."""

    def __init__(self, *, store: FleetStore) -> None:
        self._store = store

    def record_service_event(
        self,
        company_id: str,
        *,
        vehicle_id: str,
        template_id: str,
        performed_at: date,
        odometer_at_service: int,
        performed_by: str | None = None,
        notes: str | None = None,
    ) -> tuple[ServiceEventRecord, ScheduleRecord]:
        _, template = self._scoped_refs(company_id, vehicle_id, template_id)
        projection = next_due(
            performed_at,
            template.interval_months,
            template.interval_miles,
            odometer_at_service,
        )
        event, schedule = self._store.record_service_event(
            company_id=company_id,
            vehicle_id=vehicle_id,
            template_id=template_id,
            performed_at=performed_at,
            odometer_at_service=odometer_at_service,
            performed_by=performed_by,
            notes=notes,
            next_due_date=projection.next_due_date,
            next_due_odometer=projection.next_due_odometer,
        )
        logger.info(
            "service logged vehicle=%s template=%s next_due_date=%s",
            vehicle_id,
            template_id,
            schedule.next_due_date.isoformat() if schedule.next_due_date else None,
        )
        return event, schedule

    def create_schedule(
        self,
        company_id: str,
        *,
        vehicle_id: str,
        template_id: str,
        last_service_date: date | None = None,
        last_service_odometer: int | None = None,
        today: date | None = None,
    ) -> ScheduleRecord:
        """Create a schedule, treating a missing last service as performed today at the current odometer."""
        vehicle, template = self._scoped_refs(company_id, vehicle_id, template_id)
        service_date = last_service_date or today or datetime.now(timezone.utc).date()
        service_odometer = last_service_odometer if last_service_odometer is not None else vehicle.current_odometer
        projection = next_due(
            service_date,
            template.interval_months,
            template.interval_miles,
            service_odometer,
        )
        return self._store.create_schedule(
            company_id=company_id,
            vehicle_id=vehicle_id,
            template_id=template_id,
            last_service_date=service_date,
            last_service_odometer=service_odometer,
            next_due_date=projection.next_due_date,
            next_due_odometer=projection.next_due_odometer,
        )

    def _scoped_refs(self, company_id: str, vehicle_id: str, template_id: str) -> tuple[VehicleRecord, TemplateRecord]:
        # Records owned by another company are reported as missing.
        vehicle = self._store.get_vehicle(vehicle_id)
        if vehicle is None or vehicle.company_id != company_id:
            raise VehicleNotFoundError(f"vehicle not found: {vehicle_id}")
        template = self._store.get_template(template_id)
        if template is None or (template.company_id is not None and template.company_id != company_id):
            raise TemplateNotFoundError(f"template not found: {template_id}")
        return vehicle, template
