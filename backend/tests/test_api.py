from __future__ import annotations

import json
import time
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone

from fastapi.testclient import TestClient

from minifleet import api as api_module
from minifleet.billing_client import StubBillingClient
from minifleet.config import Settings
from minifleet.main import create_app
from minifleet.notifier import StubEmailSender, StubSmsSender
from minifleet.session_tokens import create_session_token, encode_session_token
from minifleet.store import InMemoryFleetStore
from minifleet.webhook_security import compute_billing_signature

SESSION_SECRET = "test-session-secret-001"
WEBHOOK_SECRET = "whsec_api_test"


def _client(**settings_overrides) -> TestClient:
    api_module._settings = replace(
        Settings(session_secret=SESSION_SECRET, stripe_webhook_secret=WEBHOOK_SECRET),
        **settings_overrides,
    )
    api_module.fleet_store = InMemoryFleetStore()
    api_module.billing_client = StubBillingClient(api_module._settings)
    api_module.email_sender = StubEmailSender()
    api_module.sms_sender = StubSmsSender()
    return TestClient(create_app())


def _headers(company_id: str, *, role: str = "OWNER", user_id: str = "usr_test") -> dict[str, str]:
    payload = create_session_token(user_id=user_id, company_id=company_id, role=role, ttl_minutes=60)  # type: ignore[arg-type]
    return {"Authorization": f"Bearer {encode_session_token(payload, secret=SESSION_SECRET)}"}


def _company(*, status: str = "ACTIVE", reminder_phone: str | None = None) -> str:
    store = api_module.fleet_store
    company = store.create_company("Acme Trucking", subscription_status=status, reminder_phone=reminder_phone)
    store.add_user(company.company_id, email="owner@acme.test", role="OWNER")
    store.add_user(company.company_id, email="manager@acme.test", role="MANAGER")
    return company.company_id


def _due_schedule(company_id: str) -> str:
    store = api_module.fleet_store
    vehicle = store.add_vehicle(company_id, make="Ford", model="Transit", year=2021, current_odometer=40000)
    template = store.add_template(name="Oil Change", interval_months=6, interval_miles=5000)
    schedule = store.create_schedule(
        company_id=company_id,
        vehicle_id=vehicle.vehicle_id,
        template_id=template.template_id,
        last_service_date=None,
        last_service_odometer=None,
        next_due_date=datetime.now(timezone.utc).date() + timedelta(days=3),
        next_due_odometer=None,
    )
    return schedule.schedule_id


def _signed(body: dict) -> tuple[bytes, dict[str, str]]:
    raw = json.dumps(body).encode("utf-8")
    timestamp = int(time.time())
    signature = compute_billing_signature(secret=WEBHOOK_SECRET, timestamp=timestamp, body=raw)
    return raw, {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}


def _subscription(subscription_id: str = "sub_api", *, status: str = "active") -> dict:
    now = int(time.time())
    return {
        "id": subscription_id,
        "customer": "cus_api",
        "status": status,
        "current_period_start": now,
        "current_period_end": now + 30 * 86400,
        "cancel_at_period_end": False,
        "items": {"data": [{"price": {"id": "price_api"}}]},
    }


def test_healthz() -> None:
    client = _client()

    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_reminder_scan_requires_session_role_and_entitlement() -> None:
    client = _client()
    active = _company()
    canceled = _company(status="CANCELED")

    assert client.post("/api/v1/reminders/scan").status_code == 401
    assert client.post("/api/v1/reminders/scan", headers={"Authorization": "Bearer junk.sig"}).status_code == 401
    assert client.post("/api/v1/reminders/scan", headers=_headers(active, role="VIEWER")).status_code == 403

    response = client.post("/api/v1/reminders/scan", headers=_headers(canceled))
    assert response.status_code == 403
    assert response.json()["detail"] == "an active subscription is required"


def test_reminder_scan_then_process() -> None:
    client = _client()
    company_id = _company()
    schedule_id = _due_schedule(company_id)
    headers = _headers(company_id, role="MANAGER")

    scan = client.post("/api/v1/reminders/scan", headers=headers)
    assert scan.status_code == 200
    scan_body = scan.json()
    assert scan_body["reminders_created"] == 1
    assert scan_body["reminders"][0]["schedule_id"] == schedule_id
    assert scan_body["reminders"][0]["channel"] == "EMAIL"

    rescan = client.post("/api/v1/reminders/scan", headers=headers, json={"action": "scan"})
    assert rescan.json()["reminders_created"] == 0

    process = client.post("/api/v1/reminders/scan", headers=headers, json={"action": "process"})
    assert process.status_code == 200
    process_body = process.json()
    assert process_body["processed"] == 1
    assert process_body["sent"] == 1
    assert process_body["failed"] == 0
    assert process_body["results"][0]["status"] == "sent"
    assert len(api_module.email_sender.sent) == 1

    invalid = client.post("/api/v1/reminders/scan", headers=headers, json={"action": "purge"})
    assert invalid.status_code == 422


def test_reminder_settings_round_trip_and_validation() -> None:
    client = _client(sms_enabled=True)
    company_id = _company()
    headers = _headers(company_id)

    initial = client.get("/api/v1/reminders/settings", headers=headers)
    assert initial.json() == {"company_id": company_id, "phone_number": None, "sms_enabled": True}

    updated = client.post("/api/v1/reminders/settings", headers=headers, json={"phone_number": "+1 (555) 123-4567"})
    assert updated.status_code == 200
    assert updated.json()["phone_number"] == "+15551234567"

    rejected = client.post("/api/v1/reminders/settings", headers=headers, json={"phone_number": "555-1234"})
    assert rejected.status_code == 422

    cleared = client.post("/api/v1/reminders/settings", headers=headers, json={"phone_number": ""})
    assert cleared.json()["phone_number"] is None


def test_reminder_test_send_masks_recipients() -> None:
    client = _client()
    company_id = _company(reminder_phone="+15551234567")
    headers = _headers(company_id)

    email = client.post("/api/v1/reminders/test", headers=headers)
    assert email.status_code == 200
    assert email.json()["status"] == "sent"
    assert sorted(email.json()["recipients"]) == ["m***@acme.test", "o***@acme.test"]

    sms = client.post("/api/v1/reminders/test", headers=headers, json={"channel": "SMS"})
    assert sms.json()["recipients"] == ["***4567"]
    assert api_module.sms_sender.sent[0][0] == "+15551234567"


def test_reminder_test_sms_without_phone_is_bad_request() -> None:
    client = _client()
    company_id = _company()

    response = client.post("/api/v1/reminders/test", headers=_headers(company_id), json={"channel": "SMS"})

    assert response.status_code == 400
    assert "phone" in response.json()["detail"]


def test_billing_webhook_checkout_flow_and_duplicates() -> None:
    client = _client()
    company_id = _company(status="TRIAL")
    api_module.billing_client.add_subscription(_subscription())
    api_module.billing_client.add_price("price_api", nickname="Fleet", unit_amount=4900)
    raw, headers = _signed(
        {
            "id": "evt_api_1",
            "type": "checkout.session.completed",
            "data": {"object": {"metadata": {"companyId": company_id}, "subscription": "sub_api", "customer": "cus_api"}},
        }
    )

    first = client.post("/api/v1/billing/webhook", content=raw, headers=headers)
    assert first.status_code == 200
    assert first.json() == {
        "received": True,
        "event_id": "evt_api_1",
        "event_type": "checkout.session.completed",
        "duplicate": False,
        "status": "processed",
    }
    company = api_module.fleet_store.get_company(company_id)
    assert company.subscription_status == "ACTIVE"
    assert company.external_customer_id == "cus_api"

    second = client.post("/api/v1/billing/webhook", content=raw, headers=headers)
    assert second.status_code == 200
    assert second.json()["duplicate"] is True


def test_billing_webhook_rejects_bad_signature() -> None:
    client = _client()
    raw, headers = _signed({"id": "evt_bad", "type": "invoice.paid", "data": {"object": {}}})

    tampered = client.post("/api/v1/billing/webhook", content=raw + b" ", headers=headers)
    unsigned = client.post("/api/v1/billing/webhook", content=raw)

    assert tampered.status_code == 400
    assert tampered.json()["detail"] == "Webhook Error: signature_mismatch"
    assert unsigned.status_code == 400
    assert unsigned.json()["detail"] == "Webhook Error: signature_missing"
    assert api_module.fleet_store.list_billing_events() == []


def test_subscription_sync_for_any_role_even_when_canceled() -> None:
    client = _client()
    company_id = _company(status="CANCELED")
    headers = _headers(company_id, role="VIEWER")

    no_subscription = client.post("/api/v1/billing/subscription/sync", headers=headers)
    assert no_subscription.status_code == 200
    assert no_subscription.json()["action"] == "no_subscription"

    store = api_module.fleet_store
    linked = store.create_company("Linked Fleet", subscription_status="PAST_DUE", external_subscription_id="sub_api")
    api_module.billing_client.add_subscription(_subscription())
    api_module.billing_client.add_price("price_api", nickname="Fleet", unit_amount=4900)

    synced = client.post("/api/v1/billing/subscription/sync", headers=_headers(linked.company_id, role="TECHNICIAN"))
    body = synced.json()
    assert body["synced"] is True
    assert body["subscription_status"] == "ACTIVE"
    assert body["cancel_at_period_end"] is False


def test_billing_replay_is_owner_only() -> None:
    client = _client()
    company_id = _company()

    assert client.post("/api/v1/billing/events/replay", headers=_headers(company_id, role="MANAGER")).status_code == 403
    response = client.post("/api/v1/billing/events/replay", headers=_headers(company_id))
    assert response.status_code == 200
    assert response.json() == {"replayed": 0, "results": []}


def test_maintenance_service_log_and_schedule_creation() -> None:
    client = _client()
    company_id = _company()
    store = api_module.fleet_store
    vehicle = store.add_vehicle(company_id, make="Ford", model="Transit", year=2021, current_odometer=40000)
    oil = store.add_template(name="Oil Change", interval_months=6, interval_miles=5000)
    brakes = store.add_template(name="Brakes", interval_months=12, interval_miles=None)
    headers = _headers(company_id)

    logged = client.post(
        "/api/v1/maintenance/services",
        headers=headers,
        json={
            "vehicle_id": vehicle.vehicle_id,
            "template_id": oil.template_id,
            "performed_at": "2026-01-31",
            "odometer_at_service": 41000,
            "notes": "   ",
        },
    )
    assert logged.status_code == 201
    schedule = logged.json()["schedule"]
    assert schedule["next_due_date"] == "2026-07-31"
    assert schedule["next_due_odometer"] == 46000

    created = client.post(
        "/api/v1/maintenance/schedules",
        headers=headers,
        json={"vehicle_id": vehicle.vehicle_id, "template_id": brakes.template_id, "last_service_date": "2025-05-01"},
    )
    assert created.status_code == 201
    assert created.json()["next_due_date"] == date(2026, 5, 1).isoformat()
    assert created.json()["last_service_odometer"] == 41000

    duplicate = client.post(
        "/api/v1/maintenance/schedules",
        headers=headers,
        json={"vehicle_id": vehicle.vehicle_id, "template_id": brakes.template_id},
    )
    assert duplicate.status_code == 400

    other_company = _company()
    foreign = client.post(
        "/api/v1/maintenance/schedules",
        headers=_headers(other_company),
        json={"vehicle_id": vehicle.vehicle_id, "template_id": oil.template_id},
    )
    assert foreign.status_code == 404

    negative = client.post(
        "/api/v1/maintenance/services",
        headers=headers,
        json={
            "vehicle_id": vehicle.vehicle_id,
            "template_id": oil.template_id,
            "performed_at": "2026-01-31",
            "odometer_at_service": -1,
        },
    )
    assert negative.status_code == 422
