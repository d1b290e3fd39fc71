from __future__ import annotations

import base64
import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Protocol, Sequence

from .config import Settings
from .models import ReminderChannel

logger = logging.getLogger(__name__)

ChannelResultStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class ChannelSendResult:
    status: ChannelResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "sent"


class EmailSender(Protocol):
    def send_email(self, recipients: Sequence[str], subject: str, body: str) -> ChannelSendResult: ...


class SmsSender(Protocol):
    def send_sms(self, phone_number: str, body: str) -> ChannelSendResult: ...


class _ChannelSendError(Exception):
    """Internal error raised when a channel HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


def _open_json(request: urllib.request.Request, *, timeout_seconds: int) -> dict[str, object]:
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        raise _ChannelSendError(
            error_code=f"http_{exc.code}",
            message=f"HTTP {exc.code}: {exc.reason}",
        ) from exc
    except urllib.error.URLError as exc:
        raise _ChannelSendError(
            error_code="connection_error",
            message=f"Connection error: {exc.reason}",
        ) from exc
    except (socket.timeout, TimeoutError) as exc:
        raise _ChannelSendError(
            error_code="timeout",
            message=f"Request timed out: {exc}",
        ) from exc
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class StubEmailSender:
    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self.sent: list[tuple[tuple[str, ...], str, str]] = []

    def send_email(self, recipients: Sequence[str], subject: str, body: str) -> ChannelSendResult:
        attempted_at = datetime.now(timezone.utc)
        if not self._enabled:
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="email_not_configured",
                error_message="Email delivery is not configured",
            )
        if not recipients:
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="no_recipients",
                error_message="No email recipients",
            )
        if any("fail" in recipient.lower() for recipient in recipients):
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for recipient",
            )
        self.sent.append((tuple(recipients), subject, body))
        logger.info(
            "stub email to=%s subject=%r",
            ", ".join(mask_contact_target(item, "EMAIL") for item in recipients),
            subject,
        )
        return ChannelSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=f"stub-email-{len(self.sent)}",
        )


class HttpEmailSender:
    """Delivers email through a Resend-compatible ``POST /emails`` endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        from_address: str,
        timeout_seconds: int = 15,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        if not from_address.strip():
            raise ValueError("from_address must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._from_address = from_address.strip()
        self._timeout_seconds = timeout_seconds

    def send_email(self, recipients: Sequence[str], subject: str, body: str) -> ChannelSendResult:
        attempted_at = datetime.now(timezone.utc)
        if not recipients:
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="no_recipients",
                error_message="No email recipients",
            )

        request = urllib.request.Request(
            f"{self._base_url}/emails",
            data=json.dumps(
                {
                    "from": self._from_address,
                    "to": list(recipients),
                    "subject": subject,
                    "text": body,
                }
            ).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            response_data = _open_json(request, timeout_seconds=self._timeout_seconds)
        except _ChannelSendError as exc:
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=exc.message,
            )
        message_id = response_data.get("id")
        return ChannelSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=str(message_id) if message_id else None,
        )


class StubSmsSender:
    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self.sent: list[tuple[str, str]] = []

    def send_sms(self, phone_number: str, body: str) -> ChannelSendResult:
        attempted_at = datetime.now(timezone.utc)
        if not self._enabled:
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="sms_not_configured",
                error_message="SMS delivery is not configured",
            )
        self.sent.append((phone_number, body))
        logger.info("stub sms to=%s", mask_contact_target(phone_number, "SMS"))
        return ChannelSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=f"stub-sms-{len(self.sent)}",
        )


class TwilioSmsSender:
    """Sends SMS through the Twilio Messages REST resource."""

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        base_url: str = "https://api.twilio.com",
        timeout_seconds: int = 15,
    ) -> None:
        if not account_sid.strip() or not auth_token.strip() or not from_number.strip():
            raise ValueError("account_sid, auth_token and from_number must not be empty")
        self._account_sid = account_sid.strip()
        self._auth_token = auth_token.strip()
        self._from_number = from_number.strip()
        self._base_url = base_url.strip().rstrip("/")
        self._timeout_seconds = timeout_seconds

    def send_sms(self, phone_number: str, body: str) -> ChannelSendResult:
        attempted_at = datetime.now(timezone.utc)
        credentials = base64.b64encode(f"{self._account_sid}:{self._auth_token}".encode("utf-8")).decode("ascii")
        request = urllib.request.Request(
            f"{self._base_url}/2010-04-01/Accounts/{self._account_sid}/Messages.json",
            data=urllib.parse.urlencode(
                {"To": phone_number, "From": self._from_number, "Body": body}
            ).encode("utf-8"),
            headers={
                "Authorization": f"Basic {credentials}",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            method="POST",
        )
        try:
            response_data = _open_json(request, timeout_seconds=self._timeout_seconds)
        except _ChannelSendError as exc:
            masked = mask_contact_target(phone_number, "SMS")
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {masked})",
            )
        message_sid = response_data.get("sid")
        return ChannelSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=str(message_sid) if message_sid else None,
        )


def create_email_sender(settings: Settings) -> EmailSender:
    if settings.email_sender_type == "http":
        if not settings.email_api_configured:
            logger.warning("EMAIL_SENDER_TYPE=http without EMAIL_API_KEY; email reminders will fail")
            return StubEmailSender(enabled=False)
        return HttpEmailSender(
            base_url=settings.email_api_base_url,
            api_key=settings.email_api_key,
            from_address=settings.email_from,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
    return StubEmailSender()


def create_sms_sender(settings: Settings) -> SmsSender:
    if settings.sms_sender_type == "twilio":
        if not settings.twilio_configured:
            logger.warning("SMS_SENDER_TYPE=twilio without Twilio credentials; SMS reminders will fail")
            return StubSmsSender(enabled=False)
        return TwilioSmsSender(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_phone_number,
            base_url=settings.twilio_api_base_url,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
    return StubSmsSender()


def mask_contact_target(contact_target: str, channel: ReminderChannel) -> str:
    normalized = contact_target.strip()
    if not normalized:
        return "***"

    if channel == "EMAIL" and "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if channel == "SMS":
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) >= 4:
            return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
