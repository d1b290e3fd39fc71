from __future__ import annotations

from typing import Iterable

from fastapi import Request

from .config import Settings
from .errors import ForbiddenError, UnauthorizedError
from .models import ENTITLED_STATUSES
from .session_tokens import SessionTokenError, SessionTokenPayload, decode_session_token
from .store import FleetStore


def current_user(request: Request, *, settings: Settings) -> SessionTokenPayload:
    token = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    if not token:
        raise UnauthorizedError("session required")
    try:
        return decode_session_token(token, secret=settings.session_secret)
    except SessionTokenError as exc:
        raise UnauthorizedError(str(exc)) from exc


def require_role(user: SessionTokenPayload, roles: Iterable[str]) -> None:
    allowed = set(roles)
    if user.role not in allowed:
        raise ForbiddenError(f"role {user.role} is not allowed; requires one of {', '.join(sorted(allowed))}")


def is_entitled(store: FleetStore, company_id: str) -> bool:
    company = store.get_company(company_id)
    return company is not None and company.subscription_status in ENTITLED_STATUSES


def require_capability(
    request: Request,
    *,
    settings: Settings,
    store: FleetStore,
    roles: Iterable[str],
    entitled: bool = True,
) -> SessionTokenPayload:
    """Resolve the caller and check role and, optionally, subscription entitlement."""
    user = current_user(request, settings=settings)
    require_role(user, roles)
    if entitled and not is_entitled(store, user.company_id):
        raise ForbiddenError("an active subscription is required")
    return user
