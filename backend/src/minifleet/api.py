from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request, status

from .access import require_capability
from .billing_client import BillingClient, create_billing_client
from .config import get_settings
from .errors import (
    CompanyNotFoundError,
    DuplicateScheduleError,
    ForbiddenError,
    NotConfiguredError,
    NotFoundError,
    UnauthorizedError,
    UpstreamError,
    WebhookSignatureError,
)
from .maintenance import MaintenanceService
from .models import (
    REMINDER_ROLES,
    BillingEventResultItem,
    BillingReplayResponse,
    BillingWebhookResponse,
    DispatchOutcomeItem,
    ReminderCreatedItem,
    ReminderProcessResponse,
    ReminderScanRequest,
    ReminderScanResponse,
    ReminderSettingsRequest,
    ReminderSettingsResponse,
    ReminderTestRequest,
    ReminderTestResponse,
    ScheduleCreateRequest,
    ScheduleItem,
    ServiceEventRequest,
    ServiceEventResponse,
    SubscriptionSyncResponse,
)
from .notifier import EmailSender, SmsSender, create_email_sender, create_sms_sender, mask_contact_target
from .reconciler import BillingEventProcessor, SubscriptionReconciler
from .reminders import ReminderDispatcher, ReminderScanner
from .session_tokens import SessionTokenPayload
from .store import FleetStore, ScheduleRecord
from .store_backends import create_fleet_store

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["minifleet"])

fleet_store: FleetStore = create_fleet_store(backend=_settings.store_backend, database_url=_settings.database_url)
billing_client: BillingClient = create_billing_client(_settings)
email_sender: EmailSender = create_email_sender(_settings)
sms_sender: SmsSender = create_sms_sender(_settings)


def reset_runtime_state_for_tests() -> None:
    fleet_store.reset()


def _reconciler() -> SubscriptionReconciler:
    return SubscriptionReconciler(store=fleet_store, billing_client=billing_client, settings=_settings)


def _event_processor() -> BillingEventProcessor:
    return BillingEventProcessor(store=fleet_store, billing_client=billing_client, reconciler=_reconciler())


def _scanner() -> ReminderScanner:
    return ReminderScanner(store=fleet_store, settings=_settings)


def _dispatcher() -> ReminderDispatcher:
    return ReminderDispatcher(
        store=fleet_store,
        settings=_settings,
        email_sender=email_sender,
        sms_sender=sms_sender,
    )


def _require(request: Request, roles: frozenset[str] | set[str], *, entitled: bool = True) -> SessionTokenPayload:
    try:
        return require_capability(
            request,
            settings=_settings,
            store=fleet_store,
            roles=roles,
            entitled=entitled,
        )
    except UnauthorizedError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except ForbiddenError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


def _schedule_item(schedule: ScheduleRecord) -> ScheduleItem:
    return ScheduleItem(
        schedule_id=schedule.schedule_id,
        vehicle_id=schedule.vehicle_id,
        template_id=schedule.template_id,
        last_service_date=schedule.last_service_date,
        last_service_odometer=schedule.last_service_odometer,
        next_due_date=schedule.next_due_date,
        next_due_odometer=schedule.next_due_odometer,
    )


@router.post("/reminders/scan", response_model=ReminderScanResponse | ReminderProcessResponse)
def run_reminders(request: Request, payload: ReminderScanRequest | None = None) -> ReminderScanResponse | ReminderProcessResponse:
    _require(request, REMINDER_ROLES)
    action = (payload or ReminderScanRequest()).action

    if action == "process":
        outcomes = _dispatcher().dispatch()
        sent = sum(1 for outcome in outcomes if outcome.status == "sent")
        return ReminderProcessResponse(
            message=f"Processed {len(outcomes)} reminders",
            processed=len(outcomes),
            sent=sent,
            failed=len(outcomes) - sent,
            results=[
                DispatchOutcomeItem(
                    reminder_id=outcome.reminder_id,
                    channel=outcome.channel,
                    status=outcome.status,
                    sent_at=outcome.sent_at,
                    error=outcome.error,
                )
                for outcome in outcomes
            ],
        )

    created = _scanner().scan()
    return ReminderScanResponse(
        message=f"Created {len(created)} reminders",
        reminders_created=len(created),
        reminders=[
            ReminderCreatedItem(
                reminder_id=item.reminder_id,
                company_id=item.company_id,
                schedule_id=item.schedule_id,
                vehicle_id=item.vehicle_id,
                due_date=item.due_date,
                channel=item.channel,
            )
            for item in created
        ],
    )


@router.get("/reminders/settings", response_model=ReminderSettingsResponse)
def get_reminder_settings(request: Request) -> ReminderSettingsResponse:
    user = _require(request, REMINDER_ROLES, entitled=False)
    company = fleet_store.get_company(user.company_id)
    if company is None:
        raise HTTPException(status_code=404, detail=f"company not found: {user.company_id}")
    return ReminderSettingsResponse(
        company_id=company.company_id,
        phone_number=company.reminder_phone,
        sms_enabled=_settings.sms_enabled,
    )


@router.post("/reminders/settings", response_model=ReminderSettingsResponse)
def update_reminder_settings(payload: ReminderSettingsRequest, request: Request) -> ReminderSettingsResponse:
    user = _require(request, REMINDER_ROLES)
    try:
        company = fleet_store.set_reminder_phone(user.company_id, payload.phone_number)
    except CompanyNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ReminderSettingsResponse(
        company_id=company.company_id,
        phone_number=company.reminder_phone,
        sms_enabled=_settings.sms_enabled,
    )


@router.post("/reminders/test", response_model=ReminderTestResponse)
def send_test_reminder(request: Request, payload: ReminderTestRequest | None = None) -> ReminderTestResponse:
    user = _require(request, REMINDER_ROLES)
    channel = (payload or ReminderTestRequest()).channel
    try:
        outcome = _dispatcher().send_test(user.company_id, channel)
    except NotConfiguredError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CompanyNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    result = outcome.result
    error = None
    if not result.ok:
        error = f"{result.error_code or 'send_failed'}: {result.error_message or 'delivery failed'}"
    return ReminderTestResponse(
        channel=outcome.channel,
        status=result.status,
        recipients=[mask_contact_target(item, outcome.channel) for item in outcome.recipients],
        error=error,
    )


@router.post("/billing/webhook", response_model=BillingWebhookResponse)
async def billing_webhook(request: Request) -> BillingWebhookResponse:
    raw_body = await request.body()
    signature = request.headers.get("Stripe-Signature")
    try:
        outcome = _event_processor().accept(raw_body, signature)
    except WebhookSignatureError as exc:
        logger.warning("billing webhook rejected: %s", exc.reason)
        raise HTTPException(status_code=400, detail=f"Webhook Error: {exc.reason}") from exc
    return BillingWebhookResponse(
        event_id=outcome.event_id,
        event_type=outcome.event_type,
        duplicate=outcome.duplicate,
        status=outcome.status,
    )


@router.post("/billing/subscription/sync", response_model=SubscriptionSyncResponse)
def sync_subscription(request: Request) -> SubscriptionSyncResponse:
    user = _require(request, {"OWNER", "MANAGER", "TECHNICIAN", "VIEWER"}, entitled=False)
    try:
        result = _reconciler().sync_company(user.company_id)
    except CompanyNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except UpstreamError as exc:
        raise HTTPException(status_code=502, detail=f"billing provider error: {exc.error_code}") from exc
    return SubscriptionSyncResponse(
        company_id=result.company_id,
        synced=result.synced,
        action=result.action,
        subscription_status=result.status,
        cancel_at_period_end=result.cancel_at_period_end,
        current_period_end=result.current_period_end,
    )


@router.post("/billing/events/replay", response_model=BillingReplayResponse)
def replay_billing_events(request: Request) -> BillingReplayResponse:
    _require(request, {"OWNER"}, entitled=False)
    outcomes = _event_processor().replay_failed()
    return BillingReplayResponse(
        replayed=len(outcomes),
        results=[
            BillingEventResultItem(
                event_id=outcome.event_id,
                event_type=outcome.event_type,
                status=outcome.status,
                error=outcome.error,
            )
            for outcome in outcomes
        ],
    )


@router.post("/maintenance/services", response_model=ServiceEventResponse, status_code=status.HTTP_201_CREATED)
def log_service_event(payload: ServiceEventRequest, request: Request) -> ServiceEventResponse:
    user = _require(request, REMINDER_ROLES)
    try:
        event, schedule = MaintenanceService(store=fleet_store).record_service_event(
            user.company_id,
            vehicle_id=payload.vehicle_id,
            template_id=payload.template_id,
            performed_at=payload.performed_at,
            odometer_at_service=payload.odometer_at_service,
            performed_by=payload.performed_by,
            notes=payload.notes,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ServiceEventResponse(service_event_id=event.service_event_id, schedule=_schedule_item(schedule))


@router.post("/maintenance/schedules", response_model=ScheduleItem, status_code=status.HTTP_201_CREATED)
def create_schedule(payload: ScheduleCreateRequest, request: Request) -> ScheduleItem:
    user = _require(request, REMINDER_ROLES)
    try:
        schedule = MaintenanceService(store=fleet_store).create_schedule(
            user.company_id,
            vehicle_id=payload.vehicle_id,
            template_id=payload.template_id,
            last_service_date=payload.last_service_date,
            last_service_odometer=payload.last_service_odometer,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except DuplicateScheduleError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _schedule_item(schedule)
