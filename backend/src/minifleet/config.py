from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "MiniFleet Manager"
    api_prefix: str = "/api/v1"
    cors_origins: tuple[str, ...] = ("http://localhost:3000",)
    store_backend: str = "inmemory"
    database_url: str = ""
    # Billing provider.
    billing_provider: str = "stub"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_api_base_url: str = "https://api.stripe.com"
    billing_webhook_signature_mode: str = "enforce"
    billing_webhook_max_age_seconds: int = 300
    billing_timeout_seconds: int = 20
    # Reminder pipeline.
    sms_enabled: bool = False
    reminder_days_before: int = 7
    reminder_claim_lease_seconds: int = 900
    reminder_dispatch_deadline_seconds: int = 240
    reminder_dispatch_batch_size: int = 50
    # Channel adapters.
    email_sender_type: str = "stub"
    email_api_base_url: str = "https://api.resend.com"
    email_api_key: str = ""
    email_from: str = "reminders@minifleet.local"
    sms_sender_type: str = "stub"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    twilio_api_base_url: str = "https://api.twilio.com"
    notifier_timeout_seconds: int = 15
    # Sessions.
    session_secret: str = "dev-session-secret"
    session_ttl_minutes: int = 720
    runtime_secret_guard_mode: str = "warn"

    @property
    def billing_configured(self) -> bool:
        if self.billing_provider == "stripe":
            return bool(self.stripe_secret_key.strip())
        return True

    @property
    def twilio_configured(self) -> bool:
        return all(
            value.strip()
            for value in (self.twilio_account_sid, self.twilio_auth_token, self.twilio_phone_number)
        )

    @property
    def email_api_configured(self) -> bool:
        return all(value.strip() for value in (self.email_api_base_url, self.email_api_key, self.email_from))


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("MINIFLEET_APP_NAME", "MiniFleet Manager"),
        api_prefix=os.getenv("API_PREFIX", "/api/v1"),
        cors_origins=_as_csv_tuple(os.getenv("CORS_ORIGINS", "http://localhost:3000")),
        store_backend=_normalize_mode(
            os.getenv("STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres", "sqlite"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        billing_provider=_normalize_mode(
            os.getenv("BILLING_PROVIDER"),
            default="stub",
            allowed={"stub", "stripe"},
        ),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
        stripe_api_base_url=os.getenv("STRIPE_API_BASE_URL", "https://api.stripe.com"),
        billing_webhook_signature_mode=_normalize_mode(
            os.getenv("BILLING_WEBHOOK_SIGNATURE_MODE"),
            default="enforce",
            allowed={"off", "log_only", "enforce"},
        ),
        billing_webhook_max_age_seconds=_as_int(os.getenv("BILLING_WEBHOOK_MAX_AGE_SECONDS"), 300),
        billing_timeout_seconds=_as_int(os.getenv("BILLING_TIMEOUT_SECONDS"), 20),
        sms_enabled=_as_bool(os.getenv("ENABLE_SMS"), False),
        reminder_days_before=_as_int(os.getenv("REMINDER_DAYS_BEFORE"), 7),
        reminder_claim_lease_seconds=_as_int(os.getenv("REMINDER_CLAIM_LEASE_SECONDS"), 900),
        reminder_dispatch_deadline_seconds=_as_int(os.getenv("REMINDER_DISPATCH_DEADLINE_SECONDS"), 240),
        reminder_dispatch_batch_size=_as_int(os.getenv("REMINDER_DISPATCH_BATCH_SIZE"), 50),
        email_sender_type=_normalize_mode(
            os.getenv("EMAIL_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        email_api_base_url=os.getenv("EMAIL_API_BASE_URL", "https://api.resend.com"),
        email_api_key=os.getenv("EMAIL_API_KEY", ""),
        email_from=os.getenv("EMAIL_FROM", "reminders@minifleet.local"),
        sms_sender_type=_normalize_mode(
            os.getenv("SMS_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "twilio"},
        ),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER", ""),
        twilio_api_base_url=os.getenv("TWILIO_API_BASE_URL", "https://api.twilio.com"),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 15),
        session_secret=os.getenv("SESSION_SECRET", "dev-session-secret"),
        session_ttl_minutes=_as_int(os.getenv("SESSION_TTL_MINUTES"), 720),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.session_secret,
        defaults={"dev-session-secret", "change-me-in-production"},
    ):
        issues.append("SESSION_SECRET is empty or uses a development placeholder")
    if settings.store_backend in {"postgres", "sqlite"} and not settings.database_url.strip():
        issues.append(f"DATABASE_URL is required when STORE_BACKEND={settings.store_backend}")
    if settings.billing_provider == "stripe" and not settings.stripe_secret_key.strip():
        issues.append("STRIPE_SECRET_KEY is required when BILLING_PROVIDER=stripe")
    if settings.billing_webhook_signature_mode == "enforce" and not settings.stripe_webhook_secret.strip():
        issues.append("STRIPE_WEBHOOK_SECRET is required when BILLING_WEBHOOK_SIGNATURE_MODE=enforce")
    if settings.email_sender_type == "http" and not settings.email_api_key.strip():
        issues.append("EMAIL_API_KEY is required when EMAIL_SENDER_TYPE=http")
    if settings.sms_enabled and settings.sms_sender_type == "twilio" and not settings.twilio_configured:
        issues.append(
            "TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_PHONE_NUMBER are required "
            "when ENABLE_SMS=true and SMS_SENDER_TYPE=twilio"
        )
    return tuple(issues)
