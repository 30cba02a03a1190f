"""Caller identity and capability checks.

Authentication happens upstream; the gateway forwards the resolved principal
as ``X-User-*`` headers. Every router goes through ``has_capability`` rather
than comparing roles inline.
"""
from typing import Callable, Iterable, Optional

from fastapi import Depends, Header, HTTPException, status
from pydantic import BaseModel

from app.models.user import Role

GUEST_SENTINELS = {"", "guest", "anonymous"}
AUDIT_ADMIN_ROLES = (Role.admin.value, Role.admin_labo.value)


class CurrentUser(BaseModel):
    user_id: str
    role: str
    email: Optional[str] = None
    name: Optional[str] = None

    @property
    def is_guest(self) -> bool:
        return self.role == Role.guest.value or self.user_id.lower() in GUEST_SENTINELS


def has_capability(actor: Optional[CurrentUser], required_roles: Iterable[str]) -> bool:
    """True when ``actor`` is a non-guest principal holding one of ``required_roles``.

    An empty ``required_roles`` means any authenticated, non-guest caller.
    """
    if actor is None or actor.is_guest:
        return False
    roles = {r.value if isinstance(r, Role) else r for r in required_roles}
    return not roles or actor.role in roles


def get_optional_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
    x_user_name: Optional[str] = Header(default=None),
) -> Optional[CurrentUser]:
    if not x_user_id:
        return None
    return CurrentUser(
        user_id=x_user_id.strip(),
        role=(x_user_role or Role.guest.value).strip().upper(),
        email=x_user_email,
        name=x_user_name,
    )


def get_current_user(user: Optional[CurrentUser] = Depends(get_optional_user)) -> CurrentUser:
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthenticated")
    return user


def require_roles(*allowed: str) -> Callable:
    """Dependency factory: 401 without a principal, 403 without the capability."""

    def checker(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.is_guest:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthenticated")
        if not has_capability(user, allowed):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return user

    return checker
