from __future__ import annotations

import logging
import secrets
from datetime import date, datetime, timedelta
from typing import Iterable

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    or_,
    and_,
    select,
    text,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .errors import (
    CompanyNotFoundError,
    DuplicateScheduleError,
    NotFoundError,
    TemplateNotFoundError,
    VehicleNotFoundError,
)
from .models import BLOCKING_REMINDER_STATUSES, BillingEventStatus, ReminderChannel, SubscriptionStatus, UserRole
from .store import (
    BillingEventRecord,
    CompanyRecord,
    FleetStore,
    InMemoryFleetStore,
    PlanRecord,
    ReminderRecord,
    ScheduleRecord,
    ServiceEventRecord,
    SubscriptionRecord,
    SubscriptionWrite,
    TemplateRecord,
    UserRecord,
    VehicleRecord,
    _coerce_utc,
    _now_utc,
)

logger = logging.getLogger(__name__)

_BLOCKING_STATUS_SQL = "status IN ({})".format(", ".join(f"'{status}'" for status in BLOCKING_REMINDER_STATUSES))


class FleetStoreBase(DeclarativeBase):
    pass


class _CompanyRow(FleetStoreBase):
    __tablename__ = "companies"

    company_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    subscription_status: Mapped[str] = mapped_column(String(16), nullable=False, default="TRIAL", index=True)
    external_customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    external_subscription_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    plan_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("plans.plan_id"), nullable=True)
    reminder_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _PlanRow(FleetStoreBase):
    __tablename__ = "plans"

    plan_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    external_price_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    interval: Mapped[str] = mapped_column(String(16), nullable=False, default="month")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _SubscriptionRow(FleetStoreBase):
    __tablename__ = "subscriptions"

    subscription_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64), ForeignKey("companies.company_id"), nullable=False, unique=True)
    plan_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("plans.plan_id"), nullable=True)
    external_subscription_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _UserRow(FleetStoreBase):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64), ForeignKey("companies.company_id"), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False)


class _VehicleRow(FleetStoreBase):
    __tablename__ = "vehicles"

    vehicle_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64), ForeignKey("companies.company_id"), nullable=False, index=True)
    make: Mapped[str] = mapped_column(String(100), nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    current_odometer: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class _TemplateRow(FleetStoreBase):
    __tablename__ = "maintenance_templates"

    template_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    company_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("companies.company_id"), nullable=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    interval_months: Mapped[int | None] = mapped_column(Integer, nullable=True)
    interval_miles: Mapped[int | None] = mapped_column(Integer, nullable=True)


class _ScheduleRow(FleetStoreBase):
    __tablename__ = "maintenance_schedules"
    __table_args__ = (UniqueConstraint("vehicle_id", "template_id", name="uq_schedules_vehicle_template"),)

    schedule_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64), ForeignKey("companies.company_id"), nullable=False, index=True)
    vehicle_id: Mapped[str] = mapped_column(String(64), ForeignKey("vehicles.vehicle_id"), nullable=False)
    template_id: Mapped[str] = mapped_column(String(64), ForeignKey("maintenance_templates.template_id"), nullable=False)
    last_service_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_service_odometer: Mapped[int | None] = mapped_column(Integer, nullable=True)
    next_due_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    next_due_odometer: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ServiceEventRow(FleetStoreBase):
    __tablename__ = "service_events"

    service_event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64), ForeignKey("companies.company_id"), nullable=False, index=True)
    vehicle_id: Mapped[str] = mapped_column(String(64), ForeignKey("vehicles.vehicle_id"), nullable=False, index=True)
    template_id: Mapped[str] = mapped_column(String(64), ForeignKey("maintenance_templates.template_id"), nullable=False)
    performed_at: Mapped[date] = mapped_column(Date, nullable=False)
    odometer_at_service: Mapped[int] = mapped_column(Integer, nullable=False)
    performed_by: Mapped[str | None] = mapped_column(String(120), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ReminderRow(FleetStoreBase):
    __tablename__ = "reminders"
    __table_args__ = (
        Index(
            "uq_reminders_active_key",
            "schedule_id",
            "due_date",
            "channel",
            unique=True,
            sqlite_where=text(_BLOCKING_STATUS_SQL),
            postgresql_where=text(_BLOCKING_STATUS_SQL),
        ),
    )

    reminder_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64), ForeignKey("companies.company_id"), nullable=False, index=True)
    schedule_id: Mapped[str] = mapped_column(String(64), ForeignKey("maintenance_schedules.schedule_id"), nullable=False)
    vehicle_id: Mapped[str] = mapped_column(String(64), ForeignKey("vehicles.vehicle_id"), nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    channel: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class _BillingEventRow(FleetStoreBase):
    __tablename__ = "billing_events"

    event_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="received", index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def _optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


def _company_record(row: _CompanyRow) -> CompanyRecord:
    return CompanyRecord(
        company_id=row.company_id,
        name=row.name,
        subscription_status=row.subscription_status,  # type: ignore[arg-type]
        external_customer_id=row.external_customer_id,
        external_subscription_id=row.external_subscription_id,
        plan_id=row.plan_id,
        reminder_phone=row.reminder_phone,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


def _plan_record(row: _PlanRow) -> PlanRecord:
    return PlanRecord(
        plan_id=row.plan_id,
        external_price_id=row.external_price_id,
        name=row.name,
        price_cents=row.price_cents,
        interval=row.interval,
        is_active=row.is_active,
        created_at=_coerce_utc(row.created_at),
    )


def _subscription_record(row: _SubscriptionRow) -> SubscriptionRecord:
    return SubscriptionRecord(
        subscription_id=row.subscription_id,
        company_id=row.company_id,
        plan_id=row.plan_id,
        external_subscription_id=row.external_subscription_id,
        status=row.status,  # type: ignore[arg-type]
        current_period_start=_optional_utc(row.current_period_start),
        current_period_end=_optional_utc(row.current_period_end),
        cancel_at_period_end=row.cancel_at_period_end,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


def _user_record(row: _UserRow) -> UserRecord:
    return UserRecord(
        user_id=row.user_id,
        company_id=row.company_id,
        email=row.email,
        name=row.name,
        role=row.role,  # type: ignore[arg-type]
    )


def _vehicle_record(row: _VehicleRow) -> VehicleRecord:
    return VehicleRecord(
        vehicle_id=row.vehicle_id,
        company_id=row.company_id,
        make=row.make,
        model=row.model,
        year=row.year,
        current_odometer=row.current_odometer,
    )


def _template_record(row: _TemplateRow) -> TemplateRecord:
    return TemplateRecord(
        template_id=row.template_id,
        company_id=row.company_id,
        name=row.name,
        interval_months=row.interval_months,
        interval_miles=row.interval_miles,
    )


def _schedule_record(row: _ScheduleRow) -> ScheduleRecord:
    return ScheduleRecord(
        schedule_id=row.schedule_id,
        company_id=row.company_id,
        vehicle_id=row.vehicle_id,
        template_id=row.template_id,
        last_service_date=row.last_service_date,
        last_service_odometer=row.last_service_odometer,
        next_due_date=row.next_due_date,
        next_due_odometer=row.next_due_odometer,
        updated_at=_coerce_utc(row.updated_at),
    )


def _service_event_record(row: _ServiceEventRow) -> ServiceEventRecord:
    return ServiceEventRecord(
        service_event_id=row.service_event_id,
        company_id=row.company_id,
        vehicle_id=row.vehicle_id,
        template_id=row.template_id,
        performed_at=row.performed_at,
        odometer_at_service=row.odometer_at_service,
        performed_by=row.performed_by,
        notes=row.notes,
        created_at=_coerce_utc(row.created_at),
    )


def _reminder_record(row: _ReminderRow) -> ReminderRecord:
    return ReminderRecord(
        reminder_id=row.reminder_id,
        company_id=row.company_id,
        schedule_id=row.schedule_id,
        vehicle_id=row.vehicle_id,
        due_date=row.due_date,
        channel=row.channel,  # type: ignore[arg-type]
        status=row.status,
        created_at=_coerce_utc(row.created_at),
        claimed_at=_optional_utc(row.claimed_at),
        sent_at=_optional_utc(row.sent_at),
        error_message=row.error_message,
    )


def _billing_event_record(row: _BillingEventRow) -> BillingEventRecord:
    return BillingEventRecord(
        event_id=row.event_id,
        event_type=row.event_type,
        payload_json=row.payload_json,
        status=row.status,  # type: ignore[arg-type]
        error_message=row.error_message,
        received_at=_coerce_utc(row.received_at),
        processed_at=_optional_utc(row.processed_at),
    )


def _new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(8)}"


def _assign_if_changed(row: object, values: dict[str, object]) -> bool:
    changed = False
    for key, value in values.items():
        current = getattr(row, key)
        if isinstance(current, datetime) and isinstance(value, datetime):
            same = _coerce_utc(current) == _coerce_utc(value)
        else:
            same = current == value
        if not same:
            setattr(row, key, value)
            changed = True
    return changed


def _enable_sqlite_foreign_keys(dbapi_conn, connection_record) -> None:
    # SQLite enforces foreign keys only when enabled on each connection.
    cursor = dbapi_conn.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


class SqlAlchemyFleetStore:
    """Relational store; every public method runs in its own transaction."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            event.listen(self._engine, "connect", _enable_sqlite_foreign_keys)
            FleetStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ReminderRow).delete()
                session.query(_ServiceEventRow).delete()
                session.query(_ScheduleRow).delete()
                session.query(_TemplateRow).delete()
                session.query(_VehicleRow).delete()
                session.query(_UserRow).delete()
                session.query(_SubscriptionRow).delete()
                session.query(_CompanyRow).delete()
                session.query(_PlanRow).delete()
                session.query(_BillingEventRow).delete()

    def create_company(
        self,
        name: str,
        *,
        subscription_status: SubscriptionStatus = "TRIAL",
        external_customer_id: str | None = None,
        external_subscription_id: str | None = None,
        reminder_phone: str | None = None,
    ) -> CompanyRecord:
        now = _now_utc()
        row = _CompanyRow(
            company_id=_new_id("cmp"),
            name=name,
            subscription_status=subscription_status,
            external_customer_id=external_customer_id,
            external_subscription_id=external_subscription_id,
            plan_id=None,
            reminder_phone=reminder_phone,
            created_at=now,
            updated_at=now,
        )
        with self._session() as session:
            with session.begin():
                session.add(row)
            return _company_record(row)

    def get_company(self, company_id: str) -> CompanyRecord | None:
        with self._session() as session:
            row = session.get(_CompanyRow, company_id)
            return _company_record(row) if row is not None else None

    def find_company_by_external_subscription_id(self, external_subscription_id: str) -> CompanyRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_CompanyRow).where(_CompanyRow.external_subscription_id == external_subscription_id)
            ).scalar_one_or_none()
            if row is None:
                row = session.execute(
                    select(_CompanyRow)
                    .join(_SubscriptionRow, _SubscriptionRow.company_id == _CompanyRow.company_id)
                    .where(_SubscriptionRow.external_subscription_id == external_subscription_id)
                ).scalar_one_or_none()
            return _company_record(row) if row is not None else None

    def set_external_customer_id(self, company_id: str, external_customer_id: str) -> CompanyRecord:
        with self._session() as session:
            with session.begin():
                row = self._require_company(session, company_id)
                if _assign_if_changed(row, {"external_customer_id": external_customer_id}):
                    row.updated_at = _now_utc()
            return _company_record(row)

    def set_reminder_phone(self, company_id: str, phone_number: str | None) -> CompanyRecord:
        with self._session() as session:
            with session.begin():
                row = self._require_company(session, company_id)
                row.reminder_phone = phone_number
                row.updated_at = _now_utc()
            return _company_record(row)

    def get_plan_by_price_id(self, external_price_id: str) -> PlanRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_PlanRow).where(_PlanRow.external_price_id == external_price_id)
            ).scalar_one_or_none()
            return _plan_record(row) if row is not None else None

    def create_plan(
        self,
        *,
        external_price_id: str,
        name: str,
        price_cents: int,
        interval: str,
    ) -> PlanRecord:
        row = _PlanRow(
            plan_id=_new_id("plan"),
            external_price_id=external_price_id,
            name=name,
            price_cents=price_cents,
            interval=interval,
            is_active=True,
            created_at=_now_utc(),
        )
        try:
            with self._session() as session:
                with session.begin():
                    session.add(row)
                return _plan_record(row)
        except IntegrityError:
            # A concurrent provisioning of the same price won the insert.
            existing = self.get_plan_by_price_id(external_price_id)
            if existing is None:
                raise
            return existing

    def get_subscription(self, company_id: str) -> SubscriptionRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_SubscriptionRow).where(_SubscriptionRow.company_id == company_id)
            ).scalar_one_or_none()
            return _subscription_record(row) if row is not None else None

    def apply_subscription_state(
        self,
        company_id: str,
        write: SubscriptionWrite,
        *,
        now: datetime,
    ) -> tuple[SubscriptionRecord, bool]:
        with self._session() as session:
            with session.begin():
                company = session.execute(
                    select(_CompanyRow).where(_CompanyRow.company_id == company_id).with_for_update()
                ).scalar_one_or_none()
                if company is None:
                    raise CompanyNotFoundError(f"company not found: {company_id}")
                row = session.execute(
                    select(_SubscriptionRow).where(_SubscriptionRow.company_id == company_id)
                ).scalar_one_or_none()
                plan_id = write.plan_id or (row.plan_id if row is not None else None) or company.plan_id
                values: dict[str, object] = {
                    "plan_id": plan_id,
                    "external_subscription_id": write.external_subscription_id,
                    "status": write.status,
                    "current_period_start": write.current_period_start,
                    "current_period_end": write.current_period_end,
                    "cancel_at_period_end": write.cancel_at_period_end,
                }
                created = row is None
                if row is None:
                    row = _SubscriptionRow(
                        subscription_id=_new_id("sub"),
                        company_id=company_id,
                        created_at=now,
                        updated_at=now,
                        **values,
                    )
                    session.add(row)
                elif _assign_if_changed(row, values):
                    row.updated_at = now

                company_values: dict[str, object] = {
                    "subscription_status": write.status,
                    "plan_id": plan_id,
                }
                if write.external_subscription_id:
                    company_values["external_subscription_id"] = write.external_subscription_id
                if _assign_if_changed(company, company_values):
                    company.updated_at = now
            return _subscription_record(row), created

    def add_user(self, company_id: str, *, email: str, role: UserRole, name: str | None = None) -> UserRecord:
        with self._session() as session:
            with session.begin():
                self._require_company(session, company_id)
                row = _UserRow(user_id=_new_id("usr"), company_id=company_id, email=email, name=name, role=role)
                session.add(row)
            return _user_record(row)

    def list_company_users(self, company_id: str, roles: Iterable[str]) -> list[UserRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_UserRow)
                .where(_UserRow.company_id == company_id)
                .where(_UserRow.role.in_(list(roles)))
                .order_by(_UserRow.email.asc())
            ).scalars().all()
            return [_user_record(row) for row in rows]

    def add_vehicle(
        self,
        company_id: str,
        *,
        make: str,
        model: str,
        year: int,
        current_odometer: int = 0,
    ) -> VehicleRecord:
        with self._session() as session:
            with session.begin():
                self._require_company(session, company_id)
                row = _VehicleRow(
                    vehicle_id=_new_id("veh"),
                    company_id=company_id,
                    make=make,
                    model=model,
                    year=year,
                    current_odometer=current_odometer,
                )
                session.add(row)
            return _vehicle_record(row)

    def get_vehicle(self, vehicle_id: str) -> VehicleRecord | None:
        with self._session() as session:
            row = session.get(_VehicleRow, vehicle_id)
            return _vehicle_record(row) if row is not None else None

    def add_template(
        self,
        *,
        name: str,
        interval_months: int | None,
        interval_miles: int | None,
        company_id: str | None = None,
    ) -> TemplateRecord:
        row = _TemplateRow(
            template_id=_new_id("tpl"),
            company_id=company_id,
            name=name,
            interval_months=interval_months,
            interval_miles=interval_miles,
        )
        with self._session() as session:
            with session.begin():
                session.add(row)
            return _template_record(row)

    def get_template(self, template_id: str) -> TemplateRecord | None:
        with self._session() as session:
            row = session.get(_TemplateRow, template_id)
            return _template_record(row) if row is not None else None

    def get_schedule(self, schedule_id: str) -> ScheduleRecord | None:
        with self._session() as session:
            row = session.get(_ScheduleRow, schedule_id)
            return _schedule_record(row) if row is not None else None

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
        try:
            with self._session() as session:
                with session.begin():
                    self._require_fleet_refs(session, vehicle_id, template_id)
                    if self._find_schedule(session, vehicle_id, template_id) is not None:
                        raise DuplicateScheduleError("This maintenance schedule already exists for this vehicle")
                    row = _ScheduleRow(
                        schedule_id=_new_id("sch"),
                        company_id=company_id,
                        vehicle_id=vehicle_id,
                        template_id=template_id,
                        last_service_date=last_service_date,
                        last_service_odometer=last_service_odometer,
                        next_due_date=next_due_date,
                        next_due_odometer=next_due_odometer,
                        updated_at=_now_utc(),
                    )
                    session.add(row)
                return _schedule_record(row)
        except IntegrityError as exc:
            raise DuplicateScheduleError("This maintenance schedule already exists for this vehicle") from exc

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
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                vehicle, _ = self._require_fleet_refs(session, vehicle_id, template_id)
                service_event = _ServiceEventRow(
                    service_event_id=_new_id("svc"),
                    company_id=company_id,
                    vehicle_id=vehicle_id,
                    template_id=template_id,
                    performed_at=performed_at,
                    odometer_at_service=odometer_at_service,
                    performed_by=performed_by,
                    notes=notes,
                    created_at=now,
                )
                session.add(service_event)
                schedule = self._find_schedule(session, vehicle_id, template_id)
                if schedule is None:
                    schedule = _ScheduleRow(schedule_id=_new_id("sch"), company_id=company_id, vehicle_id=vehicle_id, template_id=template_id)
                    session.add(schedule)
                schedule.last_service_date = performed_at
                schedule.last_service_odometer = odometer_at_service
                schedule.next_due_date = next_due_date
                schedule.next_due_odometer = next_due_odometer
                schedule.updated_at = now
                if odometer_at_service > vehicle.current_odometer:
                    vehicle.current_odometer = odometer_at_service
            return _service_event_record(service_event), _schedule_record(schedule)

    def list_due_schedules(self, company_statuses: Iterable[str]) -> list[ScheduleRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_ScheduleRow)
                .join(_CompanyRow, _CompanyRow.company_id == _ScheduleRow.company_id)
                .where(_ScheduleRow.next_due_date.is_not(None))
                .where(_CompanyRow.subscription_status.in_(list(company_statuses)))
                .order_by(_ScheduleRow.next_due_date.asc(), _ScheduleRow.schedule_id.asc())
            ).scalars().all()
            return [_schedule_record(row) for row in rows]

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
        row = _ReminderRow(
            reminder_id=_new_id("rem"),
            company_id=company_id,
            schedule_id=schedule_id,
            vehicle_id=vehicle_id,
            due_date=due_date,
            channel=channel,
            status="PENDING",
            created_at=_coerce_utc(now),
        )
        try:
            with self._session() as session:
                with session.begin():
                    session.add(row)
                return _reminder_record(row)
        except IntegrityError:
            if not self._has_blocking_reminder(schedule_id, due_date, channel):
                raise
            logger.debug(
                "reminder already active schedule_id=%s due_date=%s channel=%s",
                schedule_id,
                due_date.isoformat(),
                channel,
            )
            return None

    def _has_blocking_reminder(self, schedule_id: str, due_date: date, channel: ReminderChannel) -> bool:
        with self._session() as session:
            found = session.execute(
                select(_ReminderRow.reminder_id)
                .where(_ReminderRow.schedule_id == schedule_id)
                .where(_ReminderRow.due_date == due_date)
                .where(_ReminderRow.channel == channel)
                .where(_ReminderRow.status.in_(BLOCKING_REMINDER_STATUSES))
                .limit(1)
            ).scalar_one_or_none()
        return found is not None

    def claim_pending_reminders(
        self,
        *,
        company_statuses: Iterable[str],
        limit: int,
        now: datetime,
        lease: timedelta,
    ) -> list[ReminderRecord]:
        normalized_now = _coerce_utc(now)
        stale_before = normalized_now - lease
        with self._session() as session:
            with session.begin():
                query = (
                    select(_ReminderRow)
                    .join(_CompanyRow, _CompanyRow.company_id == _ReminderRow.company_id)
                    .where(_CompanyRow.subscription_status.in_(list(company_statuses)))
                    .where(
                        or_(
                            _ReminderRow.status == "PENDING",
                            and_(
                                _ReminderRow.status == "IN_PROGRESS",
                                _ReminderRow.claimed_at < stale_before,
                            ),
                        )
                    )
                    .order_by(_ReminderRow.created_at.asc(), _ReminderRow.reminder_id.asc())
                    .limit(limit)
                    .with_for_update(skip_locked=True, of=_ReminderRow)
                )
                rows = session.execute(query).scalars().all()
                for row in rows:
                    row.status = "IN_PROGRESS"
                    row.claimed_at = normalized_now
                return [_reminder_record(row) for row in rows]

    def mark_reminder_sent(self, reminder_id: str, *, sent_at: datetime) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_ReminderRow, reminder_id)
                if row is None:
                    raise NotFoundError(f"reminder not found: {reminder_id}")
                row.status = "SENT"
                row.sent_at = _coerce_utc(sent_at)
                row.error_message = None

    def mark_reminder_failed(self, reminder_id: str, *, error_message: str) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_ReminderRow, reminder_id)
                if row is None:
                    raise NotFoundError(f"reminder not found: {reminder_id}")
                row.status = "FAILED"
                row.error_message = error_message

    def list_reminders(self, company_id: str | None = None) -> list[ReminderRecord]:
        with self._session() as session:
            query = select(_ReminderRow).order_by(_ReminderRow.created_at.asc(), _ReminderRow.reminder_id.asc())
            if company_id is not None:
                query = query.where(_ReminderRow.company_id == company_id)
            return [_reminder_record(row) for row in session.execute(query).scalars().all()]

    def record_billing_event(
        self,
        *,
        event_id: str,
        event_type: str,
        payload_json: str,
        now: datetime,
    ) -> tuple[BillingEventRecord, bool]:
        row = _BillingEventRow(
            event_id=event_id,
            event_type=event_type,
            payload_json=payload_json,
            status="received",
            error_message=None,
            received_at=_coerce_utc(now),
            processed_at=None,
        )
        try:
            with self._session() as session:
                with session.begin():
                    session.add(row)
                return _billing_event_record(row), True
        except IntegrityError:
            with self._session() as session:
                existing = session.get(_BillingEventRow, event_id)
                if existing is None:
                    raise
                return _billing_event_record(existing), False

    def mark_billing_event(
        self,
        event_id: str,
        *,
        status: BillingEventStatus,
        error_message: str | None,
        now: datetime,
    ) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_BillingEventRow, event_id)
                if row is None:
                    raise NotFoundError(f"billing event not found: {event_id}")
                row.status = status
                row.error_message = error_message
                row.processed_at = _coerce_utc(now)

    def list_billing_events(self, status: BillingEventStatus | None = None) -> list[BillingEventRecord]:
        with self._session() as session:
            query = select(_BillingEventRow).order_by(_BillingEventRow.received_at.asc(), _BillingEventRow.event_id.asc())
            if status is not None:
                query = query.where(_BillingEventRow.status == status)
            return [_billing_event_record(row) for row in session.execute(query).scalars().all()]

    def _require_company(self, session, company_id: str) -> _CompanyRow:
        row = session.get(_CompanyRow, company_id)
        if row is None:
            raise CompanyNotFoundError(f"company not found: {company_id}")
        return row

    def _require_fleet_refs(self, session, vehicle_id: str, template_id: str) -> tuple[_VehicleRow, _TemplateRow]:
        vehicle = session.get(_VehicleRow, vehicle_id)
        if vehicle is None:
            raise VehicleNotFoundError(f"vehicle not found: {vehicle_id}")
        template = session.get(_TemplateRow, template_id)
        if template is None:
            raise TemplateNotFoundError(f"template not found: {template_id}")
        return vehicle, template

    def _find_schedule(self, session, vehicle_id: str, template_id: str) -> _ScheduleRow | None:
        return session.execute(
            select(_ScheduleRow)
            .where(_ScheduleRow.vehicle_id == vehicle_id)
            .where(_ScheduleRow.template_id == template_id)
        ).scalar_one_or_none()


def create_fleet_store(*, backend: str, database_url: str) -> FleetStore:
    normalized = backend.strip().lower()
    if normalized in {"postgres", "sqlite"}:
        return SqlAlchemyFleetStore(database_url)
    if normalized == "inmemory":
        return InMemoryFleetStore()
    raise RuntimeError(f"unsupported STORE_BACKEND: {backend}")
