from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone

from .config import Settings


@dataclass(frozen=True)
class WebhookSignatureVerification:
    verified: bool
    reason: str | None = None


def _normalize_signature(value: str) -> str | None:
    normalized = value.strip()
    if not normalized:
        return None
    if normalized.startswith("sha256="):
        return normalized.removeprefix("sha256=").strip().lower()
    return normalized.lower()


def _signature_header_parts(value: str) -> tuple[str | None, list[str]]:
    """Split ``t=<epoch>,v1=<hex>[,v1=<hex>...]`` into timestamp and candidates."""
    timestamp: str | None = None
    signatures: list[str] = []
    for chunk in value.split(","):
        key, _, item = chunk.partition("=")
        key = key.strip()
        item = item.strip()
        if not key or not item:
            continue
        if key == "t":
            timestamp = item
        elif key == "v1":
            signatures.append(item)
    return timestamp, signatures


def compute_billing_signature(*, secret: str, timestamp: int, body: bytes) -> str:
    signing_payload = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signing_payload, hashlib.sha256).hexdigest()


def verify_billing_webhook_signature(
    *,
    settings: Settings,
    body: bytes,
    signature_header: str | None,
    now: datetime | None = None,
) -> WebhookSignatureVerification:
    mode = settings.billing_webhook_signature_mode
    if mode == "off":
        return WebhookSignatureVerification(verified=True)

    secret = settings.stripe_webhook_secret.strip()
    if not secret:
        return WebhookSignatureVerification(verified=False, reason="webhook_secret_missing")

    if signature_header is None or not signature_header.strip():
        return WebhookSignatureVerification(verified=False, reason="signature_missing")

    timestamp_text, signatures = _signature_header_parts(signature_header)
    if not timestamp_text:
        return WebhookSignatureVerification(verified=False, reason="timestamp_missing")
    if not signatures:
        return WebhookSignatureVerification(verified=False, reason="signature_missing")

    try:
        timestamp = int(timestamp_text)
    except ValueError:
        return WebhookSignatureVerification(verified=False, reason="timestamp_invalid")

    current_time = now or datetime.now(timezone.utc)
    current_epoch = int(current_time.timestamp())
    max_age = max(0, settings.billing_webhook_max_age_seconds)
    if abs(current_epoch - timestamp) > max_age:
        return WebhookSignatureVerification(verified=False, reason="timestamp_out_of_window")

    expected_signature = compute_billing_signature(secret=secret, timestamp=timestamp, body=body)
    for candidate in signatures:
        normalized = _normalize_signature(candidate)
        if normalized is not None and hmac.compare_digest(normalized, expected_signature):
            return WebhookSignatureVerification(verified=True)
    return WebhookSignatureVerification(verified=False, reason="signature_mismatch")
