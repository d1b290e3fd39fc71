from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from .billing_client import BillingClient, BillingEvent, parse_billing_event
from .config import Settings
from .errors import CompanyNotFoundError, SubscriptionMissingError
from .models import BillingEventStatus, SubscriptionStatus
from .snapshots import SubscriptionSnapshot, resolve_subscription_snapshot
from .store import FleetStore, SubscriptionRecord, SubscriptionWrite

logger = logging.getLogger(__name__)

ReconcileAction = Literal["created", "updated", "skipped"]

SUBSCRIPTION_EVENT_TYPES = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    }
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReconciliationResult:
    company_id: str
    applied: bool
    action: ReconcileAction
    status: SubscriptionStatus | None = None
    plan_id: str | None = None
    subscription: SubscriptionRecord | None = None


@dataclass(frozen=True)
class SyncResult:
    company_id: str
    synced: bool
    action: str
    status: SubscriptionStatus
    cancel_at_period_end: bool = False
    current_period_end: datetime | None = None


class SubscriptionReconciler:
    def __init__(self, *, store: FleetStore, billing_client: BillingClient, settings: Settings) -> None:
        self._store = store
        self._billing_client = billing_client
        self._settings = settings

    def resolve_plan_id(self, price_id: str | None) -> str | None:
        """Return the local plan for ``price_id``, provisioning it from the provider when unknown."""
        if not price_id:
            return None
        plan = self._store.get_plan_by_price_id(price_id)
        if plan is not None:
            return plan.plan_id
        price = self._billing_client.retrieve_price(price_id)
        plan = self._store.create_plan(
            external_price_id=price_id,
            name=price.nickname or "Plan",
            price_cents=price.unit_amount,
            interval=price.interval,
        )
        logger.info("provisioned plan %s for price %s", plan.plan_id, price_id)
        return plan.plan_id

    def reconcile(
        self,
        company_id: str,
        snapshot: SubscriptionSnapshot,
        *,
        now: datetime | None = None,
    ) -> ReconciliationResult:
        """Apply ``snapshot`` to the company and its subscription in one transaction.

        A missing company is logged and reported as skipped. Any other
        failure propagates and leaves the stored state untouched.
        """
        if self._store.get_company(company_id) is None:
            logger.warning("reconcile skipped: company %s not found", company_id)
            return ReconciliationResult(company_id=company_id, applied=False, action="skipped")

        plan_id = self.resolve_plan_id(snapshot.plan_price_id)
        write = SubscriptionWrite(
            status=snapshot.status,
            plan_id=plan_id,
            external_subscription_id=snapshot.external_subscription_id,
            current_period_start=snapshot.current_period_start,
            current_period_end=snapshot.current_period_end,
            cancel_at_period_end=snapshot.cancel_at_period_end,
        )
        try:
            subscription, created = self._store.apply_subscription_state(company_id, write, now=now or _now_utc())
        except CompanyNotFoundError:
            logger.warning("reconcile skipped: company %s removed during reconciliation", company_id)
            return ReconciliationResult(company_id=company_id, applied=False, action="skipped")

        logger.info(
            "reconciled company=%s status=%s cancel_at_period_end=%s action=%s",
            company_id,
            subscription.status,
            subscription.cancel_at_period_end,
            "created" if created else "updated",
        )
        return ReconciliationResult(
            company_id=company_id,
            applied=True,
            action="created" if created else "updated",
            status=subscription.status,
            plan_id=subscription.plan_id,
            subscription=subscription,
        )

    def sync_company(self, company_id: str, *, now: datetime | None = None) -> SyncResult:
        """Pull the provider's view of the company's subscription and reconcile it."""
        company = self._store.get_company(company_id)
        if company is None:
            raise CompanyNotFoundError(f"company not found: {company_id}")

        if not self._settings.billing_configured:
            logger.warning("billing provider is not configured; skipping subscription sync")
            return SyncResult(
                company_id=company_id,
                synced=False,
                action="not_configured",
                status=company.subscription_status,
            )

        if not company.external_subscription_id:
            return SyncResult(
                company_id=company_id,
                synced=False,
                action="no_subscription",
                status=company.subscription_status,
            )

        reference_now = now or _now_utc()
        try:
            raw = self._billing_client.retrieve_subscription(company.external_subscription_id)
        except SubscriptionMissingError:
            logger.warning(
                "subscription %s missing at provider; canceling company %s",
                company.external_subscription_id,
                company_id,
            )
            return self._cancel_missing(company_id, company.external_subscription_id, reference_now)

        snapshot = resolve_subscription_snapshot(raw, now=reference_now)
        result = self.reconcile(company_id, snapshot, now=reference_now)
        return SyncResult(
            company_id=company_id,
            synced=result.applied,
            action=result.action,
            status=result.status or company.subscription_status,
            cancel_at_period_end=snapshot.cancel_at_period_end,
            current_period_end=snapshot.current_period_end,
        )

    def _cancel_missing(self, company_id: str, external_subscription_id: str, now: datetime) -> SyncResult:
        current = self._store.get_subscription(company_id)
        write = SubscriptionWrite(
            status="CANCELED",
            plan_id=None,
            external_subscription_id=external_subscription_id,
            current_period_start=current.current_period_start if current is not None else None,
            current_period_end=current.current_period_end if current is not None else None,
            cancel_at_period_end=current.cancel_at_period_end if current is not None else False,
        )
        self._store.apply_subscription_state(company_id, write, now=now)
        return SyncResult(company_id=company_id, synced=True, action="canceled_missing", status="CANCELED")


@dataclass(frozen=True)
class BillingEventOutcome:
    event_id: str
    event_type: str
    status: BillingEventStatus
    duplicate: bool = False
    error: str | None = None


def _object_id(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, dict):
        return _object_id(value.get("id"))
    return None


def _metadata_company_id(data_object: dict[str, Any]) -> str | None:
    metadata = data_object.get("metadata")
    if not isinstance(metadata, dict):
        return None
    company_id = metadata.get("companyId")
    return company_id.strip() if isinstance(company_id, str) and company_id.strip() else None


class BillingEventProcessor:
    """Durable intake of provider webhook events."""

    def __init__(
        self,
        *,
        store: FleetStore,
        billing_client: BillingClient,
        reconciler: SubscriptionReconciler,
    ) -> None:
        self._store = store
        self._billing_client = billing_client
        self._reconciler = reconciler

    def accept(self, raw_body: bytes, signature: str | None, *, now: datetime | None = None) -> BillingEventOutcome:
        """Verify, record and process one webhook delivery.

        Raises ``WebhookSignatureError`` when verification fails. Events that
        were already handled are acknowledged without reprocessing. Events
        left in ``received`` by an interrupted earlier delivery are processed
        again.
        """
        event = self._billing_client.verify_and_parse_webhook(raw_body, signature)
        reference_now = now or _now_utc()
        record, created = self._store.record_billing_event(
            event_id=event.event_id,
            event_type=event.event_type,
            payload_json=raw_body.decode("utf-8"),
            now=reference_now,
        )
        if not created and record.status != "received":
            logger.info("billing event %s already %s; acknowledging duplicate", event.event_id, record.status)
            return BillingEventOutcome(
                event_id=record.event_id,
                event_type=record.event_type,
                status=record.status,
                duplicate=True,
                error=record.error_message,
            )
        return self._process(event, now=reference_now)

    def replay_failed(self, *, now: datetime | None = None) -> list[BillingEventOutcome]:
        outcomes: list[BillingEventOutcome] = []
        for record in self._store.list_billing_events("failed"):
            event = parse_billing_event(record.payload_json.encode("utf-8"))
            outcomes.append(self._process(event, now=now or _now_utc()))
        return outcomes

    def _process(self, event: BillingEvent, *, now: datetime) -> BillingEventOutcome:
        status: BillingEventStatus
        try:
            status, error = self._route(event, now=now)
        except Exception as exc:  # noqa: BLE001
            logger.exception("billing event %s (%s) failed", event.event_id, event.event_type)
            status, error = "failed", str(exc) or exc.__class__.__name__
        self._store.mark_billing_event(event.event_id, status=status, error_message=error, now=now)
        return BillingEventOutcome(event_id=event.event_id, event_type=event.event_type, status=status, error=error)

    def _route(self, event: BillingEvent, *, now: datetime) -> tuple[BillingEventStatus, str | None]:
        if event.event_type == "checkout.session.completed":
            return self._handle_checkout_completed(event.data_object, now=now)
        if event.event_type in SUBSCRIPTION_EVENT_TYPES:
            return self._handle_subscription_change(event.data_object, now=now)
        logger.info("unhandled billing event type %s", event.event_type)
        return "ignored", None

    def _handle_checkout_completed(
        self,
        session: dict[str, Any],
        *,
        now: datetime,
    ) -> tuple[BillingEventStatus, str | None]:
        company_id = _metadata_company_id(session)
        subscription_id = _object_id(session.get("subscription"))
        if not company_id or not subscription_id:
            logger.error("checkout session is missing companyId or subscription")
            return "ignored", "checkout session missing companyId or subscription"

        raw = self._billing_client.retrieve_subscription(subscription_id)
        snapshot = resolve_subscription_snapshot(raw, now=now)
        result = self._reconciler.reconcile(company_id, snapshot, now=now)
        if not result.applied:
            return "ignored", f"company not found: {company_id}"

        customer_id = _object_id(session.get("customer")) or snapshot.external_customer_id
        if customer_id:
            self._store.set_external_customer_id(company_id, customer_id)
        return "processed", None

    def _handle_subscription_change(
        self,
        data_object: dict[str, Any],
        *,
        now: datetime,
    ) -> tuple[BillingEventStatus, str | None]:
        subscription_id = _object_id(data_object.get("id"))
        if not subscription_id:
            return "ignored", "subscription event without id"

        company = self._store.find_company_by_external_subscription_id(subscription_id)
        if company is not None:
            company_id = company.company_id
        else:
            company_id = _metadata_company_id(data_object)
            if company_id is None:
                logger.error("company not found for subscription %s", subscription_id)
                return "ignored", f"company not found for subscription: {subscription_id}"
            current = self._store.get_company(company_id)
            # A company only adopts another subscription once its current one is canceled.
            if (
                current is not None
                and current.external_subscription_id
                and current.subscription_status != "CANCELED"
            ):
                logger.info(
                    "ignoring event for superseded subscription %s company_id=%s current=%s",
                    subscription_id,
                    company_id,
                    current.external_subscription_id,
                )
                return "ignored", f"subscription {subscription_id} superseded by {current.external_subscription_id}"

        try:
            raw = self._billing_client.retrieve_subscription(subscription_id)
        except SubscriptionMissingError:
            logger.warning("subscription %s missing at provider; using event payload", subscription_id)
            raw = data_object

        snapshot = resolve_subscription_snapshot(raw, now=now)
        result = self._reconciler.reconcile(company_id, snapshot, now=now)
        if not result.applied:
            return "ignored", f"company not found: {company_id}"
        return "processed", None
