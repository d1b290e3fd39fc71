from __future__ import annotations

import io
import json
import urllib.error
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from minifleet.billing_client import (
    HttpStripeBillingClient,
    StubBillingClient,
    create_billing_client,
    parse_billing_event,
)
from minifleet.config import Settings
from minifleet.errors import NotConfiguredError, SubscriptionMissingError, UpstreamError
from minifleet.webhook_security import compute_billing_signature, verify_billing_webhook_signature

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
NOW_EPOCH = int(NOW.timestamp())
BODY = b'{"id":"evt_1","type":"invoice.paid","data":{"object":{}}}'


def _settings(**overrides) -> Settings:
    values = {
        "stripe_webhook_secret": "whsec_test",
        "stripe_secret_key": "sk_test_123",
        "stripe_api_base_url": "https://api.stripe.test",
    }
    values.update(overrides)
    return Settings(**values)


def _header(*, secret: str = "whsec_test", timestamp: int = NOW_EPOCH, body: bytes = BODY) -> str:
    return f"t={timestamp},v1={compute_billing_signature(secret=secret, timestamp=timestamp, body=body)}"


def _mock_response(body: dict) -> MagicMock:
    response = MagicMock()
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


def _http_error(code: int, body: dict | None = None) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(
        url="https://api.stripe.test",
        code=code,
        msg="error",
        hdrs={},  # type: ignore[arg-type]
        fp=io.BytesIO(json.dumps(body or {}).encode("utf-8")),
    )


def test_valid_signature_verifies() -> None:
    verification = verify_billing_webhook_signature(
        settings=_settings(), body=BODY, signature_header=_header(), now=NOW
    )

    assert verification.verified is True


def test_any_matching_v1_candidate_verifies() -> None:
    header = f"t={NOW_EPOCH},v1=deadbeef,v1={compute_billing_signature(secret='whsec_test', timestamp=NOW_EPOCH, body=BODY)}"

    assert verify_billing_webhook_signature(settings=_settings(), body=BODY, signature_header=header, now=NOW).verified


def test_tampered_body_and_wrong_secret_fail() -> None:
    tampered = verify_billing_webhook_signature(
        settings=_settings(), body=BODY + b" ", signature_header=_header(), now=NOW
    )
    wrong_secret = verify_billing_webhook_signature(
        settings=_settings(), body=BODY, signature_header=_header(secret="whsec_other"), now=NOW
    )

    assert tampered.reason == "signature_mismatch"
    assert wrong_secret.reason == "signature_mismatch"


def test_stale_timestamp_is_rejected() -> None:
    stale = NOW_EPOCH - 301

    verification = verify_billing_webhook_signature(
        settings=_settings(), body=BODY, signature_header=_header(timestamp=stale), now=NOW
    )

    assert verification.verified is False
    assert verification.reason == "timestamp_out_of_window"


def test_missing_secret_and_off_mode() -> None:
    missing = verify_billing_webhook_signature(
        settings=_settings(stripe_webhook_secret=""), body=BODY, signature_header=_header(), now=NOW
    )
    off = verify_billing_webhook_signature(
        settings=_settings(billing_webhook_signature_mode="off"), body=BODY, signature_header=None, now=NOW
    )

    assert missing.reason == "webhook_secret_missing"
    assert off.verified is True


def test_parse_billing_event_extracts_data_object() -> None:
    event = parse_billing_event(BODY)

    assert event.event_id == "evt_1"
    assert event.event_type == "invoice.paid"
    assert event.data_object == {}


def test_stub_client_retrievals() -> None:
    client = StubBillingClient(_settings())
    client.add_subscription({"id": "sub_1", "status": "active"})
    client.add_price("price_1", nickname=None, unit_amount=1500, interval="year")

    assert client.retrieve_subscription("sub_1")["status"] == "active"
    price = client.retrieve_price("price_1")
    assert (price.nickname, price.unit_amount, price.interval) == (None, 1500, "year")
    with pytest.raises(SubscriptionMissingError):
        client.retrieve_subscription("sub_missing")


@patch("minifleet.billing_client.urllib.request.urlopen")
def test_http_client_retrieves_subscription_with_bearer_auth(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"id": "sub_1", "status": "active"})

    payload = HttpStripeBillingClient(_settings()).retrieve_subscription("sub_1")

    assert payload["status"] == "active"
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://api.stripe.test/v1/subscriptions/sub_1"
    assert request_arg.get_header("Authorization") == "Bearer sk_test_123"
    assert request_arg.get_method() == "GET"


@patch("minifleet.billing_client.urllib.request.urlopen")
def test_http_client_maps_missing_subscription(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = _http_error(404, {"error": {"code": "resource_missing"}})

    with pytest.raises(SubscriptionMissingError) as exc_info:
        HttpStripeBillingClient(_settings()).retrieve_subscription("sub_gone")

    assert exc_info.value.subscription_id == "sub_gone"


@patch("minifleet.billing_client.urllib.request.urlopen")
def test_http_client_surfaces_other_provider_errors(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = _http_error(500)

    with pytest.raises(UpstreamError) as exc_info:
        HttpStripeBillingClient(_settings()).retrieve_subscription("sub_1")

    assert not isinstance(exc_info.value, SubscriptionMissingError)
    assert exc_info.value.error_code == "http_500"


@patch("minifleet.billing_client.urllib.request.urlopen")
def test_http_client_price_details(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response(
        {"id": "price_1", "nickname": "Fleet Pro", "unit_amount": 9900, "recurring": {"interval": "month"}}
    )

    price = HttpStripeBillingClient(_settings()).retrieve_price("price_1")

    assert price.nickname == "Fleet Pro"
    assert price.unit_amount == 9900
    assert mock_urlopen.call_args[0][0].full_url == "https://api.stripe.test/v1/prices/price_1"


def test_http_client_requires_secret_key() -> None:
    with pytest.raises(NotConfiguredError):
        HttpStripeBillingClient(_settings(stripe_secret_key=""))


def test_create_billing_client_falls_back_to_stub_without_key() -> None:
    assert isinstance(create_billing_client(_settings(billing_provider="stub")), StubBillingClient)
    assert isinstance(create_billing_client(_settings(billing_provider="stripe")), HttpStripeBillingClient)
    assert isinstance(
        create_billing_client(_settings(billing_provider="stripe", stripe_secret_key="")),
        StubBillingClient,
    )
