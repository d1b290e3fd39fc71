from __future__ import annotations


class FleetError(Exception):
    """Base class for errors raised by the MiniFleet core."""


class UnauthorizedError(FleetError):
    """Raised when a request carries no valid session."""


class ForbiddenError(FleetError):
    """Raised on role, scope, or entitlement violations."""


class NotConfiguredError(FleetError):
    """Raised when an adapter is missing credentials or a delivery target."""


class InvalidRequestError(FleetError, ValueError):
    """Raised for malformed scan/process or maintenance requests."""


class UpstreamError(FleetError):
    """Raised when the billing provider or a channel adapter call fails."""

    def __init__(self, message: str, *, error_code: str = "upstream_error") -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class SubscriptionMissingError(UpstreamError):
    """Raised when the billing provider no longer knows a subscription id."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(f"subscription not found at provider: {subscription_id}", error_code="resource_missing")
        self.subscription_id = subscription_id


class WebhookSignatureError(FleetError):
    """Raised when a billing webhook fails signature verification."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"webhook signature verification failed: {reason}")
        self.reason = reason


class NotFoundError(FleetError, KeyError):
    """Raised when a referenced record does not exist."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else self.__class__.__name__


class CompanyNotFoundError(NotFoundError):
    """Raised when an operation references a company id that does not exist."""


class VehicleNotFoundError(NotFoundError):
    """Raised when an operation references a vehicle id that does not exist."""


class TemplateNotFoundError(NotFoundError):
    """Raised when an operation references a maintenance template that does not exist."""


class ScheduleNotFoundError(NotFoundError):
    """Raised when an operation references a maintenance schedule that does not exist."""


class DuplicateScheduleError(InvalidRequestError):
    """Raised when a schedule already exists for a (vehicle, template) pair."""
