from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Protocol

from .config import Settings
from .errors import NotConfiguredError, SubscriptionMissingError, UpstreamError, WebhookSignatureError
from .webhook_security import verify_billing_webhook_signature

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BillingEvent:
    event_id: str
    event_type: str
    data_object: dict[str, Any]
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PriceDetails:
    price_id: str
    nickname: str | None
    unit_amount: int
    interval: str


class BillingClient(Protocol):
    def verify_and_parse_webhook(self, raw_body: bytes, signature: str | None) -> BillingEvent: ...

    def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]: ...

    def retrieve_price(self, price_id: str) -> PriceDetails: ...


def parse_billing_event(raw_body: bytes) -> BillingEvent:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WebhookSignatureError("payload_invalid") from exc
    if not isinstance(payload, dict):
        raise WebhookSignatureError("payload_invalid")

    event_id = str(payload.get("id") or "").strip()
    event_type = str(payload.get("type") or "").strip()
    if not event_id or not event_type:
        raise WebhookSignatureError("payload_invalid")

    data = payload.get("data")
    data_object = data.get("object") if isinstance(data, dict) else None
    return BillingEvent(
        event_id=event_id,
        event_type=event_type,
        data_object=data_object if isinstance(data_object, dict) else {},
        raw=payload,
    )


def _verify_webhook(settings: Settings, raw_body: bytes, signature: str | None) -> BillingEvent:
    verification = verify_billing_webhook_signature(
        settings=settings,
        body=raw_body,
        signature_header=signature,
    )
    if not verification.verified:
        reason = verification.reason or "signature_invalid"
        if settings.billing_webhook_signature_mode == "enforce":
            raise WebhookSignatureError(reason)
        logger.warning("billing webhook signature not verified (%s); accepting in log_only mode", reason)
    return parse_billing_event(raw_body)


def price_details_from_payload(price_id: str, payload: dict[str, Any]) -> PriceDetails:
    recurring = payload.get("recurring")
    interval = recurring.get("interval") if isinstance(recurring, dict) else None
    unit_amount = payload.get("unit_amount")
    nickname = payload.get("nickname")
    return PriceDetails(
        price_id=price_id,
        nickname=nickname if isinstance(nickname, str) and nickname.strip() else None,
        unit_amount=unit_amount if isinstance(unit_amount, int) and not isinstance(unit_amount, bool) else 0,
        interval=interval if isinstance(interval, str) and interval else "month",
    )


class StubBillingClient:
    """In-process provider for local runs and tests."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.prices: dict[str, dict[str, Any]] = {}
        self.retrieved_subscription_ids: list[str] = []

    def add_subscription(self, payload: dict[str, Any]) -> None:
        self.subscriptions[str(payload["id"])] = payload

    def remove_subscription(self, subscription_id: str) -> None:
        self.subscriptions.pop(subscription_id, None)

    def add_price(self, price_id: str, *, nickname: str | None, unit_amount: int, interval: str = "month") -> None:
        self.prices[price_id] = {
            "id": price_id,
            "nickname": nickname,
            "unit_amount": unit_amount,
            "recurring": {"interval": interval},
        }

    def verify_and_parse_webhook(self, raw_body: bytes, signature: str | None) -> BillingEvent:
        return _verify_webhook(self._settings, raw_body, signature)

    def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        self.retrieved_subscription_ids.append(subscription_id)
        payload = self.subscriptions.get(subscription_id)
        if payload is None:
            raise SubscriptionMissingError(subscription_id)
        return payload

    def retrieve_price(self, price_id: str) -> PriceDetails:
        payload = self.prices.get(price_id)
        if payload is None:
            raise UpstreamError(f"price not found at provider: {price_id}", error_code="resource_missing")
        return price_details_from_payload(price_id, payload)


class HttpStripeBillingClient:
    """Talks to the Stripe REST API with ``urllib``."""

    def __init__(self, settings: Settings) -> None:
        secret_key = settings.stripe_secret_key.strip()
        base_url = settings.stripe_api_base_url.strip().rstrip("/")
        if not secret_key:
            raise NotConfiguredError("STRIPE_SECRET_KEY is required for BILLING_PROVIDER=stripe")
        if not base_url:
            raise ValueError("stripe_api_base_url must not be empty")
        self._settings = settings
        self._secret_key = secret_key
        self._base_url = base_url
        self._timeout_seconds = settings.billing_timeout_seconds

    def verify_and_parse_webhook(self, raw_body: bytes, signature: str | None) -> BillingEvent:
        return _verify_webhook(self._settings, raw_body, signature)

    def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        path = f"/v1/subscriptions/{urllib.parse.quote(subscription_id, safe='')}"
        try:
            return self._get(path)
        except UpstreamError as exc:
            if exc.error_code in {"http_404", "resource_missing"}:
                raise SubscriptionMissingError(subscription_id) from exc
            raise

    def retrieve_price(self, price_id: str) -> PriceDetails:
        path = f"/v1/prices/{urllib.parse.quote(price_id, safe='')}"
        return price_details_from_payload(price_id, self._get(path))

    def _get(self, path: str) -> dict[str, Any]:
        request = urllib.request.Request(
            f"{self._base_url}{path}",
            headers={
                "Authorization": f"Bearer {self._secret_key}",
                "Accept": "application/json",
            },
            method="GET",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise UpstreamError(
                f"HTTP {exc.code}: {exc.reason}",
                error_code=_provider_error_code(exc),
            ) from exc
        except urllib.error.URLError as exc:
            raise UpstreamError(f"Connection error: {exc.reason}", error_code="connection_error") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise UpstreamError(f"Request timed out: {exc}", error_code="timeout") from exc
        if not isinstance(payload, dict):
            raise UpstreamError("unexpected provider response", error_code="invalid_response")
        return payload


def _provider_error_code(exc: urllib.error.HTTPError) -> str:
    try:
        body = json.loads(exc.read().decode("utf-8"))
    except (AttributeError, OSError, ValueError):
        return f"http_{exc.code}"
    error = body.get("error") if isinstance(body, dict) else None
    code = error.get("code") if isinstance(error, dict) else None
    if isinstance(code, str) and code:
        return code
    return f"http_{exc.code}"


def create_billing_client(settings: Settings) -> BillingClient:
    if settings.billing_provider == "stripe":
        if settings.billing_configured:
            return HttpStripeBillingClient(settings)
        logger.warning("BILLING_PROVIDER=stripe without STRIPE_SECRET_KEY; using the stub billing client")
    return StubBillingClient(settings)
