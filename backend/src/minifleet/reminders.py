from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Literal

from .config import Settings
from .errors import (
    CompanyNotFoundError,
    NotConfiguredError,
    ScheduleNotFoundError,
    TemplateNotFoundError,
    VehicleNotFoundError,
)
from .models import ENTITLED_STATUSES, REMINDER_ROLES, ReminderChannel
from .notifier import ChannelSendResult, EmailSender, SmsSender
from .store import FleetStore, ReminderRecord, TemplateRecord, VehicleRecord

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime:
    if value is None:
        return _now_utc()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class ReminderCreated:
    reminder_id: str
    company_id: str
    schedule_id: str
    vehicle_id: str
    due_date: date
    channel: ReminderChannel


@dataclass(frozen=True)
class DispatchOutcome:
    reminder_id: str
    channel: ReminderChannel
    status: Literal["sent", "failed"]
    sent_at: datetime | None = None
    error: str | None = None


@dataclass(frozen=True)
class ChannelCheckOutcome:
    channel: ReminderChannel
    recipients: tuple[str, ...]
    result: ChannelSendResult


def days_until_due(next_due_date: date, now: datetime) -> int:
    return (next_due_date - _as_utc(now).date()).days


class ReminderScanner:
    """Creates at most one blocking reminder per (schedule, due date, channel)."""

    def __init__(self, *, store: FleetStore, settings: Settings) -> None:
        self._store = store
        self._settings = settings

    def channels(self) -> tuple[ReminderChannel, ...]:
        if self._settings.sms_enabled:
            return ("EMAIL", "SMS")
        return ("EMAIL",)

    def scan(self, now: datetime | None = None) -> list[ReminderCreated]:
        reference_now = _as_utc(now)
        window = self._settings.reminder_days_before
        channels = self.channels()
        has_recipients: dict[str, bool] = {}
        created: list[ReminderCreated] = []

        for schedule in self._store.list_due_schedules(ENTITLED_STATUSES):
            if schedule.next_due_date is None:
                continue
            if days_until_due(schedule.next_due_date, reference_now) > window:
                continue
            if schedule.company_id not in has_recipients:
                has_recipients[schedule.company_id] = bool(
                    self._store.list_company_users(schedule.company_id, REMINDER_ROLES)
                )
            if not has_recipients[schedule.company_id]:
                logger.debug("company %s has no reminder recipients; skipping schedule %s", schedule.company_id, schedule.schedule_id)
                continue

            for channel in channels:
                reminder = self._store.create_reminder_if_absent(
                    company_id=schedule.company_id,
                    schedule_id=schedule.schedule_id,
                    vehicle_id=schedule.vehicle_id,
                    due_date=schedule.next_due_date,
                    channel=channel,
                    now=reference_now,
                )
                if reminder is None:
                    continue
                created.append(
                    ReminderCreated(
                        reminder_id=reminder.reminder_id,
                        company_id=reminder.company_id,
                        schedule_id=reminder.schedule_id,
                        vehicle_id=reminder.vehicle_id,
                        due_date=reminder.due_date,
                        channel=reminder.channel,
                    )
                )

        logger.info("reminder scan created %d reminders", len(created))
        return created


def format_email(vehicle: VehicleRecord, template: TemplateRecord, due_date: date) -> tuple[str, str]:
    subject = f"Maintenance Reminder: {template.name} for {vehicle.make} {vehicle.model}"
    body = (
        "Maintenance Reminder\n"
        "\n"
        f"Vehicle: {vehicle.year} {vehicle.make} {vehicle.model}\n"
        f"Service: {template.name}\n"
        f"Due Date: {due_date.isoformat()}\n"
        "\n"
        "Please schedule this maintenance service.\n"
        "\n"
        "This is an automated reminder from MiniFleet Manager."
    )
    return subject, body


def format_sms(vehicle: VehicleRecord, template: TemplateRecord, due_date: date) -> str:
    return f"Maintenance reminder: {template.name} for {vehicle.make} {vehicle.model} due {due_date.isoformat()}"


class ReminderDispatcher:
    """Claims pending reminders and delivers them through the channel senders.

    Each reminder is isolated: a sender failure or a raised error marks only
    that reminder FAILED. Claiming stops once the pass deadline has passed;
    reminders not yet claimed stay PENDING for the next pass.
    """

    def __init__(
        self,
        *,
        store: FleetStore,
        settings: Settings,
        email_sender: EmailSender,
        sms_sender: SmsSender,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._settings = settings
        self._email_sender = email_sender
        self._sms_sender = sms_sender
        self._monotonic = monotonic

    def dispatch(self, now: datetime | None = None) -> list[DispatchOutcome]:
        reference_now = _as_utc(now)
        lease = timedelta(seconds=max(0, self._settings.reminder_claim_lease_seconds))
        batch_size = max(1, self._settings.reminder_dispatch_batch_size)
        deadline = self._monotonic() + max(0, self._settings.reminder_dispatch_deadline_seconds)
        outcomes: list[DispatchOutcome] = []

        while self._monotonic() < deadline:
            batch = self._store.claim_pending_reminders(
                company_statuses=ENTITLED_STATUSES,
                limit=batch_size,
                now=reference_now,
                lease=lease,
            )
            if not batch:
                break
            for reminder in batch:
                outcomes.append(self._dispatch_one(reminder, sent_at=now))
        else:
            logger.warning("reminder dispatch deadline reached after %d reminders", len(outcomes))

        sent = sum(1 for outcome in outcomes if outcome.status == "sent")
        logger.info("reminder dispatch processed=%d sent=%d failed=%d", len(outcomes), sent, len(outcomes) - sent)
        return outcomes

    def send_test(self, company_id: str, channel: ReminderChannel) -> ChannelCheckOutcome:
        """Send a fixed test message to the company's reminder targets on ``channel``."""
        if channel == "EMAIL":
            recipients = self._email_recipients(company_id)
            result = self._email_sender.send_email(
                recipients,
                "MiniFleet test reminder",
                "This is a test reminder from MiniFleet Manager. Email reminders are working.",
            )
            return ChannelCheckOutcome(channel=channel, recipients=tuple(recipients), result=result)

        phone_number = self._reminder_phone(company_id)
        result = self._sms_sender.send_sms(phone_number, "MiniFleet test reminder: SMS reminders are working.")
        return ChannelCheckOutcome(channel=channel, recipients=(phone_number,), result=result)

    def _dispatch_one(self, reminder: ReminderRecord, *, sent_at: datetime | None) -> DispatchOutcome:
        try:
            result = self._deliver(reminder)
        except Exception as exc:  # noqa: BLE001
            logger.exception("failed to send reminder %s", reminder.reminder_id)
            error = str(exc) or exc.__class__.__name__
            self._store.mark_reminder_failed(reminder.reminder_id, error_message=error)
            return DispatchOutcome(reminder_id=reminder.reminder_id, channel=reminder.channel, status="failed", error=error)

        if not result.ok:
            error = f"{result.error_code or 'send_failed'}: {result.error_message or 'delivery failed'}"
            logger.warning("reminder %s delivery failed: %s", reminder.reminder_id, error)
            self._store.mark_reminder_failed(reminder.reminder_id, error_message=error)
            return DispatchOutcome(reminder_id=reminder.reminder_id, channel=reminder.channel, status="failed", error=error)

        delivered_at = _as_utc(sent_at) if sent_at is not None else result.attempted_at
        self._store.mark_reminder_sent(reminder.reminder_id, sent_at=delivered_at)
        return DispatchOutcome(
            reminder_id=reminder.reminder_id,
            channel=reminder.channel,
            status="sent",
            sent_at=delivered_at,
        )

    def _deliver(self, reminder: ReminderRecord) -> ChannelSendResult:
        schedule = self._store.get_schedule(reminder.schedule_id)
        if schedule is None:
            raise ScheduleNotFoundError(f"schedule not found: {reminder.schedule_id}")
        vehicle = self._store.get_vehicle(reminder.vehicle_id)
        if vehicle is None:
            raise VehicleNotFoundError(f"vehicle not found: {reminder.vehicle_id}")
        template = self._store.get_template(schedule.template_id)
        if template is None:
            raise TemplateNotFoundError(f"template not found: {schedule.template_id}")

        if reminder.channel == "EMAIL":
            recipients = self._email_recipients(reminder.company_id)
            subject, body = format_email(vehicle, template, reminder.due_date)
            return self._email_sender.send_email(recipients, subject, body)

        phone_number = self._reminder_phone(reminder.company_id)
        return self._sms_sender.send_sms(phone_number, format_sms(vehicle, template, reminder.due_date))

    def _email_recipients(self, company_id: str) -> list[str]:
        recipients = [user.email for user in self._store.list_company_users(company_id, REMINDER_ROLES)]
        if not recipients:
            raise NotConfiguredError("company has no OWNER or MANAGER users to email")
        return recipients

    def _reminder_phone(self, company_id: str) -> str:
        company = self._store.get_company(company_id)
        if company is None:
            raise CompanyNotFoundError(f"company not found: {company_id}")
        if not company.reminder_phone:
            raise NotConfiguredError("reminder phone number is not configured")
        return company.reminder_phone
