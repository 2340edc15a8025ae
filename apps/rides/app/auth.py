from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Request

from .errors import Forbidden, Unauthenticated
from . import settings

ROLE_RIDER = "rider"
ROLE_DRIVER = "driver"
ROLE_ADMIN = "admin"
_ROLES = (ROLE_RIDER, ROLE_DRIVER, ROLE_ADMIN)


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def is_user(self, user_id: Optional[str]) -> bool:
        return bool(user_id) and self.user_id == user_id


def require_internal(request: Request | None) -> None:
    """X-Internal-Secret must match when INTERNAL_API_SECRET is configured."""
    secret = settings.INTERNAL_API_SECRET
    if not secret:
        return
    hdr = request.headers.get("X-Internal-Secret") if request is not None else None
    if not hdr or not hmac.compare_digest(hdr, secret):
        raise Forbidden("forbidden")


def current_actor(
    request: Request,
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(default=None, alias="X-User-Role"),
) -> Actor:
    # Identity headers are set by the upstream gateway after it authenticated the caller.
    require_internal(request)
    uid = (x_user_id or "").strip()
    role = (x_user_role or "").strip().lower()
    if not uid or not role:
        raise Unauthenticated()
    if role not in _ROLES:
        raise Forbidden(f"unknown role '{role}'")
    return Actor(user_id=uid, role=role)


def require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise Forbidden("admin only")
