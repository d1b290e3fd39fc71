from __future__ import annotations

import os
from dataclasses import replace

from minifleet.config import Settings, get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def _production_settings() -> Settings:
    return Settings(
        session_secret="prod-session-secret-001",
        stripe_webhook_secret="whsec_prod_001",
    )


def test_get_settings_defaults_to_stub_providers_and_enforced_signatures() -> None:
    names = ("BILLING_PROVIDER", "EMAIL_SENDER_TYPE", "SMS_SENDER_TYPE", "BILLING_WEBHOOK_SIGNATURE_MODE", "ENABLE_SMS")
    previous = {name: _set_env(name, None) for name in names}
    try:
        settings = get_settings()
        assert settings.billing_provider == "stub"
        assert settings.email_sender_type == "stub"
        assert settings.sms_sender_type == "stub"
        assert settings.billing_webhook_signature_mode == "enforce"
        assert settings.sms_enabled is False
        assert settings.reminder_days_before == 7
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_get_settings_falls_back_on_unknown_modes_and_bad_integers() -> None:
    previous = {
        "STORE_BACKEND": _set_env("STORE_BACKEND", "mongodb"),
        "REMINDER_DAYS_BEFORE": _set_env("REMINDER_DAYS_BEFORE", "soon"),
        "ENABLE_SMS": _set_env("ENABLE_SMS", "Yes"),
    }
    try:
        settings = get_settings()
        assert settings.store_backend == "inmemory"
        assert settings.reminder_days_before == 7
        assert settings.sms_enabled is True
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_clean_production_settings_have_no_issues() -> None:
    assert runtime_secret_issues(_production_settings()) == ()


def test_placeholder_session_secret_is_flagged() -> None:
    issues = runtime_secret_issues(replace(_production_settings(), session_secret="change-me"))

    assert any("SESSION_SECRET" in issue for issue in issues)


def test_enforced_signatures_require_webhook_secret() -> None:
    issues = runtime_secret_issues(replace(_production_settings(), stripe_webhook_secret=""))
    assert any("STRIPE_WEBHOOK_SECRET is required" in issue for issue in issues)

    relaxed = replace(_production_settings(), stripe_webhook_secret="", billing_webhook_signature_mode="off")
    assert runtime_secret_issues(relaxed) == ()


def test_stripe_and_database_requirements() -> None:
    settings = replace(_production_settings(), billing_provider="stripe", store_backend="postgres")

    issues = runtime_secret_issues(settings)

    assert any("STRIPE_SECRET_KEY is required" in issue for issue in issues)
    assert any("DATABASE_URL is required when STORE_BACKEND=postgres" in issue for issue in issues)
    assert settings.billing_configured is False


def test_twilio_credentials_only_required_when_sms_enabled() -> None:
    twilio_without_credentials = replace(_production_settings(), sms_sender_type="twilio")
    assert runtime_secret_issues(twilio_without_credentials) == ()

    issues = runtime_secret_issues(replace(twilio_without_credentials, sms_enabled=True))
    assert any("TWILIO_ACCOUNT_SID" in issue for issue in issues)

    configured = replace(
        twilio_without_credentials,
        sms_enabled=True,
        twilio_account_sid="AC123",
        twilio_auth_token="token",
        twilio_phone_number="+15550001111",
    )
    assert configured.twilio_configured is True
    assert runtime_secret_issues(configured) == ()
