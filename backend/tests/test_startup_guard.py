from __future__ import annotations

import os

import pytest
from fastapi.testclient import TestClient

from minifleet.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _base_runtime_secret_env() -> dict[str, str | None]:
    return {
        "SESSION_SECRET": "prod-session-secret-001",
        "RUNTIME_SECRET_GUARD_MODE": "enforce",
        "BILLING_WEBHOOK_SIGNATURE_MODE": "off",
        "BILLING_PROVIDER": "stub",
        "EMAIL_SENDER_TYPE": "stub",
        "SMS_SENDER_TYPE": "stub",
        "STORE_BACKEND": None,
        "ENABLE_SMS": None,
    }


def test_create_app_starts_with_stub_providers() -> None:
    previous = _set_env(_base_runtime_secret_env())
    try:
        app = create_app()
        assert app.title == "MiniFleet Manager"

        response = TestClient(app).get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "store_backend": "inmemory"}
    finally:
        _restore_env(previous)


def test_create_app_blocks_when_stripe_selected_without_secret_key() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "BILLING_PROVIDER": "stripe",
            "STRIPE_SECRET_KEY": None,
        }
    )
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        message = str(exc_info.value)
        assert "STRIPE_SECRET_KEY is required" in message
        assert "BILLING_PROVIDER=stub" in message
    finally:
        _restore_env(previous)


def test_create_app_only_warns_in_warn_mode(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "RUNTIME_SECRET_GUARD_MODE": "warn",
            "SESSION_SECRET": "dev-session-secret",
        }
    )
    try:
        app = create_app()
        assert app.title == "MiniFleet Manager"
        assert "SESSION_SECRET" in caplog.text
    finally:
        _restore_env(previous)
