from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from itertools import count
from threading import Lock
from typing import Iterable, Protocol

from .errors import (
    CompanyNotFoundError,
    DuplicateScheduleError,
    NotFoundError,
    TemplateNotFoundError,
    VehicleNotFoundError,
)
from .models import (
    BLOCKING_REMINDER_STATUSES,
    BillingEventStatus,
    ReminderChannel,
    SubscriptionStatus,
    UserRole,
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class CompanyRecord:
    company_id: str
    name: str
    subscription_status: SubscriptionStatus
    external_customer_id: str | None
    external_subscription_id: str | None
    plan_id: str | None
    reminder_phone: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class PlanRecord:
    plan_id: str
    external_price_id: str
    name: str
    price_cents: int
    interval: str
    is_active: bool
    created_at: datetime


@dataclass(frozen=True)
class SubscriptionRecord:
    subscription_id: str
    company_id: str
    plan_id: str | None
    external_subscription_id: str | None
    status: SubscriptionStatus
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class UserRecord:
    user_id: str
    company_id: str
    email: str
    name: str | None
    role: UserRole


@dataclass(frozen=True)
class VehicleRecord:
    vehicle_id: str
    company_id: str
    make: str
    model: str
    year: int
    current_odometer: int


@dataclass(frozen=True)
class TemplateRecord:
    template_id: str
    company_id: str | None
    name: str
    interval_months: int | None
    interval_miles: int | None


@dataclass(frozen=True)
class ScheduleRecord:
    schedule_id: str
    company_id: str
    vehicle_id: str
    template_id: str
    last_service_date: date | None
    last_service_odometer: int | None
    next_due_date: date | None
    next_due_odometer: int | None
    updated_at: datetime


@dataclass(frozen=True)
class ServiceEventRecord:
    service_event_id: str
    company_id: str
    vehicle_id: str
    template_id: str
    performed_at: date
    odometer_at_service: int
    performed_by: str | None
    notes: str | None
    created_at: datetime


@dataclass(frozen=True)
class ReminderRecord:
    reminder_id: str
    company_id: str
    schedule_id: str
    vehicle_id: str
    due_date: date
    channel: ReminderChannel
    status: str
    created_at: datetime
    claimed_at: datetime | None
    sent_at: datetime | None
    error_message: str | None


@dataclass(frozen=True)
class BillingEventRecord:
    event_id: str
    event_type: str
    payload_json: str
    status: BillingEventStatus
    error_message: str | None
    received_at: datetime
    processed_at: datetime | None

    def payload(self) -> dict[str, object]:
        parsed = json.loads(self.payload_json)
        return parsed if isinstance(parsed, dict) else {}


@dataclass(frozen=True)
class SubscriptionWrite:
    """Subscription fields applied to a company in a single transaction.

    ``plan_id=None`` keeps whatever plan the company and subscription already
    reference.
    """

    status: SubscriptionStatus
    plan_id: str | None
    external_subscription_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool


class FleetStore(Protocol):
    def reset(self) -> None: ...

    # Companies, plans, subscriptions.
    def create_company(
        self,
        name: str,
        *,
        subscription_status: SubscriptionStatus = "TRIAL",
        external_customer_id: str | None = None,
        external_subscription_id: str | None = None,
        reminder_phone: str | None = None,
    ) -> CompanyRecord: ...

    def get_company(self, company_id: str) -> CompanyRecord | None: ...

    def find_company_by_external_subscription_id(self, external_subscription_id: str) -> CompanyRecord | None: ...

    def set_external_customer_id(self, company_id: str, external_customer_id: str) -> CompanyRecord: ...

    def set_reminder_phone(self, company_id: str, phone_number: str | None) -> CompanyRecord: ...

    def get_plan_by_price_id(self, external_price_id: str) -> PlanRecord | None: ...

    def create_plan(
        self,
        *,
        external_price_id: str,
        name: str,
        price_cents: int,
        interval: str,
    ) -> PlanRecord: ...

    def get_subscription(self, company_id: str) -> SubscriptionRecord | None: ...

    def apply_subscription_state(
        self,
        company_id: str,
        write: SubscriptionWrite,
        *,
        now: datetime,
    ) -> tuple[SubscriptionRecord, bool]: ...

    # Users and fleet.
    def add_user(self, company_id: str, *, email: str, role: UserRole, name: str | None = None) -> UserRecord: ...

    def list_company_users(self, company_id: str, roles: Iterable[str]) -> list[UserRecord]: ...

    def add_vehicle(
        self,
        company_id: str,
        *,
        make: str,
        model: str,
        year: int,
        current_odometer: int = 0,
    ) -> VehicleRecord: ...

    def get_vehicle(self, vehicle_id: str) -> VehicleRecord | None: ...

    def add_template(
        self,
        *,
        name: str,
        interval_months: int | None,
        interval_miles: int | None,
        company_id: str | None = None,
    ) -> TemplateRecord: ...

    def get_template(self, template_id: str) -> TemplateRecord | None: ...

    # Maintenance schedules.
    def get_schedule(self, schedule_id: str) -> ScheduleRecord | None: ...

    def create_schedule(
        self,
        *,
        company_id: str,
        vehicle_id: str,
        template_id: str,
        last_service_date: date | None,
        last_service_odometer: int | None,
        next_due_date: date | None,
        next_due_odometer: int | None,
    ) -> ScheduleRecord: ...

    def record_service_event(
        self,
        *,
        company_id: str,
        vehicle_id: str,
        template_id: str,
        performed_at: date,
        odometer_at_service: int,
        performed_by: str | None,
        notes: str | None,
        next_due_date: date | None,
        next_due_odometer: int | None,
    ) -> tuple[ServiceEventRecord, ScheduleRecord]: ...

    def list_due_schedules(self, company_statuses: Iterable[str]) -> list[ScheduleRecord]: ...

    # Reminders.
    def create_reminder_if_absent(
        self,
        *,
        company_id: str,
        schedule_id: str,
        vehicle_id: str,
        due_date: date,
        channel: ReminderChannel,
        now: datetime,
    ) -> ReminderRecord | None: ...

    def claim_pending_reminders(
        self,
        *,
        company_statuses: Iterable[str],
        limit: int,
        now: datetime,
        lease: timedelta,
    ) -> list[ReminderRecord]: ...

    def mark_reminder_sent(self, reminder_id: str, *, sent_at: datetime) -> None: ...

    def mark_reminder_failed(self, reminder_id: str, *, error_message: str) -> None: ...

    def list_reminders(self, company_id: str | None = None) -> list[ReminderRecord]: ...

    # Billing events.
    def record_billing_event(
        self,
        *,
        event_id: str,
        event_type: str,
        payload_json: str,
        now: datetime,
    ) -> tuple[BillingEventRecord, bool]: ...

    def mark_billing_event(
        self,
        event_id: str,
        *,
        status: BillingEventStatus,
        error_message: str | None,
        now: datetime,
    ) -> None: ...

    def list_billing_events(self, status: BillingEventStatus | None = None) -> list[BillingEventRecord]: ...


def _subscription_changed(current: SubscriptionRecord, candidate: SubscriptionRecord) -> bool:
    return replace(candidate, updated_at=current.updated_at) != current


class InMemoryFleetStore:
    """Lock-guarded in-memory store with incremental ids."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = count(1)
        self._companies: dict[str, CompanyRecord] = {}
        self._plans: dict[str, PlanRecord] = {}
        self._subscriptions: dict[str, SubscriptionRecord] = {}
        self._users: dict[str, UserRecord] = {}
        self._vehicles: dict[str, VehicleRecord] = {}
        self._templates: dict[str, TemplateRecord] = {}
        self._schedules: dict[str, ScheduleRecord] = {}
        self._service_events: dict[str, ServiceEventRecord] = {}
        self._reminders: dict[str, ReminderRecord] = {}
        self._billing_events: dict[str, BillingEventRecord] = {}

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._counter):06d}"

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._companies.clear()
            self._plans.clear()
            self._subscriptions.clear()
            self._users.clear()
            self._vehicles.clear()
            self._templates.clear()
            self._schedules.clear()
            self._service_events.clear()
            self._reminders.clear()
            self._billing_events.clear()

    def create_company(
        self,
        name: str,
        *,
        subscription_status: SubscriptionStatus = "TRIAL",
        external_customer_id: str | None = None,
        external_subscription_id: str | None = None,
        reminder_phone: str | None = None,
    ) -> CompanyRecord:
        with self._lock:
            now = _now_utc()
            record = CompanyRecord(
                company_id=self._next_id("cmp"),
                name=name,
                subscription_status=subscription_status,
                external_customer_id=external_customer_id,
                external_subscription_id=external_subscription_id,
                plan_id=None,
                reminder_phone=reminder_phone,
                created_at=now,
                updated_at=now,
            )
            self._companies[record.company_id] = record
            return record

    def get_company(self, company_id: str) -> CompanyRecord | None:
        with self._lock:
            return self._companies.get(company_id)

    def find_company_by_external_subscription_id(self, external_subscription_id: str) -> CompanyRecord | None:
        with self._lock:
            for company in self._companies.values():
                if company.external_subscription_id == external_subscription_id:
                    return company
            for subscription in self._subscriptions.values():
                if subscription.external_subscription_id == external_subscription_id:
                    return self._companies.get(subscription.company_id)
            return None

    def set_external_customer_id(self, company_id: str, external_customer_id: str) -> CompanyRecord:
        with self._lock:
            company = self._require_company(company_id)
            if company.external_customer_id == external_customer_id:
                return company
            updated = replace(company, external_customer_id=external_customer_id, updated_at=_now_utc())
            self._companies[company_id] = updated
            return updated

    def set_reminder_phone(self, company_id: str, phone_number: str | None) -> CompanyRecord:
        with self._lock:
            company = self._require_company(company_id)
            updated = replace(company, reminder_phone=phone_number, updated_at=_now_utc())
            self._companies[company_id] = updated
            return updated

    def get_plan_by_price_id(self, external_price_id: str) -> PlanRecord | None:
        with self._lock:
            for plan in self._plans.values():
                if plan.external_price_id == external_price_id:
                    return plan
            return None

    def create_plan(
        self,
        *,
        external_price_id: str,
        name: str,
        price_cents: int,
        interval: str,
    ) -> PlanRecord:
        with self._lock:
            for plan in self._plans.values():
                if plan.external_price_id == external_price_id:
                    return plan
            record = PlanRecord(
                plan_id=self._next_id("plan"),
                external_price_id=external_price_id,
                name=name,
                price_cents=price_cents,
                interval=interval,
                is_active=True,
                created_at=_now_utc(),
            )
            self._plans[record.plan_id] = record
            return record

    def get_subscription(self, company_id: str) -> SubscriptionRecord | None:
        with self._lock:
            return self._subscriptions.get(company_id)

    def apply_subscription_state(
        self,
        company_id: str,
        write: SubscriptionWrite,
        *,
        now: datetime,
    ) -> tuple[SubscriptionRecord, bool]:
        with self._lock:
            company = self._require_company(company_id)
            current = self._subscriptions.get(company_id)
            plan_id = write.plan_id or (current.plan_id if current is not None else None) or company.plan_id

            # Build both records before assigning either so a failure leaves no partial write.
            if current is None:
                subscription = SubscriptionRecord(
                    subscription_id=self._next_id("sub"),
                    company_id=company_id,
                    plan_id=plan_id,
                    external_subscription_id=write.external_subscription_id,
                    status=write.status,
                    current_period_start=write.current_period_start,
                    current_period_end=write.current_period_end,
                    cancel_at_period_end=write.cancel_at_period_end,
                    created_at=now,
                    updated_at=now,
                )
                created = True
            else:
                candidate = replace(
                    current,
                    plan_id=plan_id,
                    external_subscription_id=write.external_subscription_id,
                    status=write.status,
                    current_period_start=write.current_period_start,
                    current_period_end=write.current_period_end,
                    cancel_at_period_end=write.cancel_at_period_end,
                    updated_at=now,
                )
                subscription = candidate if _subscription_changed(current, candidate) else current
                created = False

            company_candidate = replace(
                company,
                subscription_status=write.status,
                plan_id=plan_id,
                external_subscription_id=write.external_subscription_id or company.external_subscription_id,
                updated_at=now,
            )
            if replace(company_candidate, updated_at=company.updated_at) == company:
                company_candidate = company

            self._subscriptions[company_id] = subscription
            self._companies[company_id] = company_candidate
            return subscription, created

    def add_user(self, company_id: str, *, email: str, role: UserRole, name: str | None = None) -> UserRecord:
        with self._lock:
            self._require_company(company_id)
            record = UserRecord(
                user_id=self._next_id("usr"),
                company_id=company_id,
                email=email,
                name=name,
                role=role,
            )
            self._users[record.user_id] = record
            return record

    def list_company_users(self, company_id: str, roles: Iterable[str]) -> list[UserRecord]:
        allowed = set(roles)
        with self._lock:
            return [
                user
                for user in self._users.values()
                if user.company_id == company_id and user.role in allowed
            ]

    def add_vehicle(
        self,
        company_id: str,
        *,
        make: str,
        model: str,
        year: int,
        current_odometer: int = 0,
    ) -> VehicleRecord:
        with self._lock:
            self._require_company(company_id)
            record = VehicleRecord(
                vehicle_id=self._next_id("veh"),
                company_id=company_id,
                make=make,
                model=model,
                year=year,
                current_odometer=current_odometer,
            )
            self._vehicles[record.vehicle_id] = record
            return record

    def get_vehicle(self, vehicle_id: str) -> VehicleRecord | None:
        with self._lock:
            return self._vehicles.get(vehicle_id)

    def add_template(
        self,
        *,
        name: str,
        interval_months: int | None,
        interval_miles: int | None,
        company_id: str | None = None,
    ) -> TemplateRecord:
        with self._lock:
            record = TemplateRecord(
                template_id=self._next_id("tpl"),
                company_id=company_id,
                name=name,
                interval_months=interval_months,
                interval_miles=interval_miles,
            )
            self._templates[record.template_id] = record
            return record

    def get_template(self, template_id: str) -> TemplateRecord | None:
        with self._lock:
            return self._templates.get(template_id)

    def get_schedule(self, schedule_id: str) -> ScheduleRecord | None:
        with self._lock:
            return self._schedules.get(schedule_id)

    def create_schedule(
        self,
        *,
        company_id: str,
        vehicle_id: str,
        template_id: str,
        last_service_date: date | None,
        last_service_odometer: int | None,
        next_due_date: date | None,
        next_due_odometer: int | None,
    ) -> ScheduleRecord:
        with self._lock:
            self._require_fleet_refs(vehicle_id, template_id)
            if self._find_schedule(vehicle_id, template_id) is not None:
                raise DuplicateScheduleError("This maintenance schedule already exists for this vehicle")
            record = ScheduleRecord(
                schedule_id=self._next_id("sch"),
                company_id=company_id,
                vehicle_id=vehicle_id,
                template_id=template_id,
                last_service_date=last_service_date,
                last_service_odometer=last_service_odometer,
                next_due_date=next_due_date,
                next_due_odometer=next_due_odometer,
                updated_at=_now_utc(),
            )
            self._schedules[record.schedule_id] = record
            return record

    def record_service_event(
        self,
        *,
        company_id: str,
        vehicle_id: str,
        template_id: str,
        performed_at: date,
        odometer_at_service: int,
        performed_by: str | None,
        notes: str | None,
        next_due_date: date | None,
        next_due_odometer: int | None,
    ) -> tuple[ServiceEventRecord, ScheduleRecord]:
        with self._lock:
            vehicle, _ = self._require_fleet_refs(vehicle_id, template_id)
            now = _now_utc()
            event = ServiceEventRecord(
                service_event_id=self._next_id("svc"),
                company_id=company_id,
                vehicle_id=vehicle_id,
                template_id=template_id,
                performed_at=performed_at,
                odometer_at_service=odometer_at_service,
                performed_by=performed_by,
                notes=notes,
                created_at=now,
            )
            existing = self._find_schedule(vehicle_id, template_id)
            if existing is None:
                schedule = ScheduleRecord(
                    schedule_id=self._next_id("sch"),
                    company_id=company_id,
                    vehicle_id=vehicle_id,
                    template_id=template_id,
                    last_service_date=performed_at,
                    last_service_odometer=odometer_at_service,
                    next_due_date=next_due_date,
                    next_due_odometer=next_due_odometer,
                    updated_at=now,
                )
            else:
                schedule = replace(
                    existing,
                    last_service_date=performed_at,
                    last_service_odometer=odometer_at_service,
                    next_due_date=next_due_date,
                    next_due_odometer=next_due_odometer,
                    updated_at=now,
                )
            self._service_events[event.service_event_id] = event
            self._schedules[schedule.schedule_id] = schedule
            if odometer_at_service > vehicle.current_odometer:
                self._vehicles[vehicle_id] = replace(vehicle, current_odometer=odometer_at_service)
            return event, schedule

    def list_due_schedules(self, company_statuses: Iterable[str]) -> list[ScheduleRecord]:
        allowed = set(company_statuses)
        with self._lock:
            result: list[ScheduleRecord] = []
            for schedule in self._schedules.values():
                if schedule.next_due_date is None:
                    continue
                company = self._companies.get(schedule.company_id)
                if company is None or company.subscription_status not in allowed:
                    continue
                result.append(schedule)
            return result

    def create_reminder_if_absent(
        self,
        *,
        company_id: str,
        schedule_id: str,
        vehicle_id: str,
        due_date: date,
        channel: ReminderChannel,
        now: datetime,
    ) -> ReminderRecord | None:
        with self._lock:
            for reminder in self._reminders.values():
                if (
                    reminder.schedule_id == schedule_id
                    and reminder.due_date == due_date
                    and reminder.channel == channel
                    and reminder.status in BLOCKING_REMINDER_STATUSES
                ):
                    return None
            record = ReminderRecord(
                reminder_id=self._next_id("rem"),
                company_id=company_id,
                schedule_id=schedule_id,
                vehicle_id=vehicle_id,
                due_date=due_date,
                channel=channel,
                status="PENDING",
                created_at=now,
                claimed_at=None,
                sent_at=None,
                error_message=None,
            )
            self._reminders[record.reminder_id] = record
            return record

    def claim_pending_reminders(
        self,
        *,
        company_statuses: Iterable[str],
        limit: int,
        now: datetime,
        lease: timedelta,
    ) -> list[ReminderRecord]:
        allowed = set(company_statuses)
        stale_before = now - lease
        with self._lock:
            claimed: list[ReminderRecord] = []
            for reminder_id in sorted(self._reminders):
                if len(claimed) >= limit:
                    break
                reminder = self._reminders[reminder_id]
                company = self._companies.get(reminder.company_id)
                if company is None or company.subscription_status not in allowed:
                    continue
                stale_claim = (
                    reminder.status == "IN_PROGRESS"
                    and reminder.claimed_at is not None
                    and reminder.claimed_at < stale_before
                )
                if reminder.status != "PENDING" and not stale_claim:
                    continue
                updated = replace(reminder, status="IN_PROGRESS", claimed_at=now)
                self._reminders[reminder_id] = updated
                claimed.append(updated)
            return claimed

    def mark_reminder_sent(self, reminder_id: str, *, sent_at: datetime) -> None:
        with self._lock:
            reminder = self._reminders[reminder_id]
            self._reminders[reminder_id] = replace(reminder, status="SENT", sent_at=sent_at, error_message=None)

    def mark_reminder_failed(self, reminder_id: str, *, error_message: str) -> None:
        with self._lock:
            reminder = self._reminders[reminder_id]
            self._reminders[reminder_id] = replace(reminder, status="FAILED", error_message=error_message)

    def list_reminders(self, company_id: str | None = None) -> list[ReminderRecord]:
        with self._lock:
            return [
                self._reminders[key]
                for key in sorted(self._reminders)
                if company_id is None or self._reminders[key].company_id == company_id
            ]

    def record_billing_event(
        self,
        *,
        event_id: str,
        event_type: str,
        payload_json: str,
        now: datetime,
    ) -> tuple[BillingEventRecord, bool]:
        with self._lock:
            existing = self._billing_events.get(event_id)
            if existing is not None:
                return existing, False
            record = BillingEventRecord(
                event_id=event_id,
                event_type=event_type,
                payload_json=payload_json,
                status="received",
                error_message=None,
                received_at=now,
                processed_at=None,
            )
            self._billing_events[event_id] = record
            return record, True

    def mark_billing_event(
        self,
        event_id: str,
        *,
        status: BillingEventStatus,
        error_message: str | None,
        now: datetime,
    ) -> None:
        with self._lock:
            record = self._billing_events.get(event_id)
            if record is None:
                raise NotFoundError(f"billing event not found: {event_id}")
            self._billing_events[event_id] = replace(
                record,
                status=status,
                error_message=error_message,
                processed_at=now,
            )

    def list_billing_events(self, status: BillingEventStatus | None = None) -> list[BillingEventRecord]:
        with self._lock:
            rows = sorted(self._billing_events.values(), key=lambda value: (value.received_at, value.event_id))
            return [row for row in rows if status is None or row.status == status]

    def _require_company(self, company_id: str) -> CompanyRecord:
        company = self._companies.get(company_id)
        if company is None:
            raise CompanyNotFoundError(f"company not found: {company_id}")
        return company

    def _require_fleet_refs(self, vehicle_id: str, template_id: str) -> tuple[VehicleRecord, TemplateRecord]:
        vehicle = self._vehicles.get(vehicle_id)
        if vehicle is None:
            raise VehicleNotFoundError(f"vehicle not found: {vehicle_id}")
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFoundError(f"template not found: {template_id}")
        return vehicle, template

    def _find_schedule(self, vehicle_id: str, template_id: str) -> ScheduleRecord | None:
        for schedule in self._schedules.values():
            if schedule.vehicle_id == vehicle_id and schedule.template_id == template_id:
                return schedule
        return None
