from __future__ import annotations

import re
from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

SubscriptionStatus = Literal["TRIAL", "ACTIVE", "PAST_DUE", "UNPAID", "CANCELED"]
UserRole = Literal["OWNER", "MANAGER", "TECHNICIAN", "VIEWER"]
ReminderChannel = Literal["EMAIL", "SMS"]
ReminderStatus = Literal["PENDING", "IN_PROGRESS", "SENT", "FAILED"]
BillingEventStatus = Literal["received", "processed", "ignored", "failed"]
ReminderAction = Literal["scan", "process"]
DispatchStatus = Literal["sent", "failed"]

ENTITLED_STATUSES: frozenset[str] = frozenset({"ACTIVE", "TRIAL"})
REMINDER_ROLES: frozenset[str] = frozenset({"OWNER", "MANAGER"})
BLOCKING_REMINDER_STATUSES: tuple[str, ...] = ("PENDING", "IN_PROGRESS", "SENT")

_PHONE_PATTERN = re.compile(r"^\+[1-9]\d{7,14}$")


def normalize_phone_number(value: str) -> str:
    """Collapse common separators and require an E.164 number."""
    compact = re.sub(r"[\s\-().]", "", value.strip())
    if compact.startswith("00"):
        compact = f"+{compact[2:]}"
    if not _PHONE_PATTERN.match(compact):
        raise ValueError("phone_number must be in E.164 format, e.g. +15551234567")
    return compact


class ReminderScanRequest(BaseModel):
    action: ReminderAction = "scan"


class ReminderCreatedItem(BaseModel):
    reminder_id: str
    company_id: str
    schedule_id: str
    vehicle_id: str
    due_date: date
    channel: ReminderChannel


class ReminderScanResponse(BaseModel):
    message: str
    reminders_created: int
    reminders: list[ReminderCreatedItem] = Field(default_factory=list)


class DispatchOutcomeItem(BaseModel):
    reminder_id: str
    channel: ReminderChannel
    status: DispatchStatus
    sent_at: datetime | None = None
    error: str | None = None


class ReminderProcessResponse(BaseModel):
    message: str
    processed: int
    sent: int
    failed: int
    results: list[DispatchOutcomeItem] = Field(default_factory=list)


class ReminderSettingsRequest(BaseModel):
    phone_number: str | None = Field(default=None, max_length=32)

    @field_validator("phone_number")
    @classmethod
    def _normalize_phone(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return normalize_phone_number(value)


class ReminderSettingsResponse(BaseModel):
    company_id: str
    phone_number: str | None
    sms_enabled: bool


class ReminderTestRequest(BaseModel):
    channel: ReminderChannel = "EMAIL"


class ReminderTestResponse(BaseModel):
    channel: ReminderChannel
    status: DispatchStatus
    recipients: list[str]
    error: str | None = None


class BillingWebhookResponse(BaseModel):
    received: bool = True
    event_id: str
    event_type: str
    duplicate: bool = False
    status: BillingEventStatus


class SubscriptionSyncResponse(BaseModel):
    company_id: str
    synced: bool
    action: str
    subscription_status: SubscriptionStatus
    cancel_at_period_end: bool = False
    current_period_end: datetime | None = None


class BillingEventResultItem(BaseModel):
    event_id: str
    event_type: str
    status: BillingEventStatus
    error: str | None = None


class BillingReplayResponse(BaseModel):
    replayed: int
    results: list[BillingEventResultItem] = Field(default_factory=list)


class ScheduleItem(BaseModel):
    schedule_id: str
    vehicle_id: str
    template_id: str
    last_service_date: date | None
    last_service_odometer: int | None
    next_due_date: date | None
    next_due_odometer: int | None


class ScheduleCreateRequest(BaseModel):
    vehicle_id: str = Field(min_length=1, max_length=64)
    template_id: str = Field(min_length=1, max_length=64)
    last_service_date: date | None = None
    last_service_odometer: int | None = Field(default=None, ge=0)


class ServiceEventRequest(BaseModel):
    vehicle_id: str = Field(min_length=1, max_length=64)
    template_id: str = Field(min_length=1, max_length=64)
    performed_at: date
    odometer_at_service: int = Field(ge=0)
    performed_by: str | None = Field(default=None, max_length=120)
    notes: str | None = Field(default=None, max_length=2000)

    @field_validator("performed_by", "notes")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None


class ServiceEventResponse(BaseModel):
    service_event_id: str
    schedule: ScheduleItem
