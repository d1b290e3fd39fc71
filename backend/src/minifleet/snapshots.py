from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from .models import SubscriptionStatus

logger = logging.getLogger(__name__)

PROVIDER_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": "ACTIVE",
    "canceled": "CANCELED",
    "past_due": "PAST_DUE",
    "unpaid": "UNPAID",
    "trialing": "TRIAL",
}


@dataclass(frozen=True)
class SubscriptionSnapshot:
    status: SubscriptionStatus
    plan_price_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    external_subscription_id: str | None = None
    external_customer_id: str | None = None


def _epoch_seconds(value: Any) -> int | None:
    # bool is an int subclass; the provider never sends booleans for timestamps.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value <= 0:
        return None
    return int(value)


def _timestamp(value: Any) -> datetime | None:
    seconds = _epoch_seconds(value)
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _first_item(raw: Mapping[str, Any]) -> Mapping[str, Any]:
    items = raw.get("items")
    if not isinstance(items, Mapping):
        return {}
    data = items.get("data")
    if not isinstance(data, list) or not data:
        return {}
    first = data[0]
    return first if isinstance(first, Mapping) else {}


def _price_id(item: Mapping[str, Any]) -> str | None:
    price = item.get("price")
    if isinstance(price, Mapping):
        candidate = price.get("id")
    else:
        candidate = price
    if isinstance(candidate, str) and candidate.strip():
        return candidate.strip()
    return None


def _optional_id(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, Mapping):
        return _optional_id(value.get("id"))
    return None


def resolve_status(raw_status: Any) -> SubscriptionStatus:
    normalized = str(raw_status or "").strip().lower()
    if normalized == "canceled":
        return "CANCELED"
    mapped = PROVIDER_STATUS_MAP.get(normalized)
    if mapped is None:
        logger.warning("unrecognized provider subscription status %r; resolving to CANCELED", raw_status)
        return "CANCELED"
    return mapped


def resolve_subscription_snapshot(
    raw: Mapping[str, Any],
    *,
    now: datetime | None = None,
) -> SubscriptionSnapshot:
    """Normalize a provider subscription object into a snapshot.

    Works the same for webhook payloads and for subscriptions fetched on
    demand. A raw ``canceled`` status always wins. ``cancel_at_period_end``
    is set when the provider flag is true or when ``cancel_at`` lies strictly
    in the future. Period timestamps that are missing, zero or not numeric
    resolve to ``None``; when the top-level fields are absent the first
    subscription item's period fields are used instead.
    """
    reference_now = now or datetime.now(timezone.utc)
    item = _first_item(raw)

    period_start = _timestamp(raw.get("current_period_start"))
    if period_start is None:
        period_start = _timestamp(item.get("current_period_start"))
    period_end = _timestamp(raw.get("current_period_end"))
    if period_end is None:
        period_end = _timestamp(item.get("current_period_end"))

    cancel_at = _epoch_seconds(raw.get("cancel_at"))
    future_cancel_at = cancel_at is not None and cancel_at > int(reference_now.timestamp())
    cancel_at_period_end = raw.get("cancel_at_period_end") is True or future_cancel_at

    return SubscriptionSnapshot(
        status=resolve_status(raw.get("status")),
        plan_price_id=_price_id(item),
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=cancel_at_period_end,
        external_subscription_id=_optional_id(raw.get("id")),
        external_customer_id=_optional_id(raw.get("customer")),
    )
