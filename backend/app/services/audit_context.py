"""Helpers that turn an HTTP request and caller into audit event parts."""
import re
import time
import uuid
from typing import Any, Optional

from fastapi import Request

from app.auth import CurrentUser
from app.models.audit_event import ActionType
from app.schemas.audit import AuditActor, AuditContext, SYSTEM_ACTOR

# Matched against the last word of a key: ``accessToken``, ``db_password``, ``Authorization``.
SENSITIVE_WORDS = {"password", "passwd", "token", "secret", "authorization", "cookie"}
# Matched against the whole key with separators removed: ``apiKey``, ``session_id``.
SENSITIVE_NAMES = {"apikey", "privatekey", "secretkey", "sessionid", "otp"}
REDACTED = "[REDACTED]"

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_SEPARATORS = re.compile(r"[_\-.\s]+")

_METHOD_ACTIONS = {
    "POST": ActionType.create,
    "GET": ActionType.read,
    "PUT": ActionType.update,
    "PATCH": ActionType.update,
    "DELETE": ActionType.delete,
}


def action_type_from_method(method: str) -> ActionType:
    return _METHOD_ACTIONS.get(method.upper(), ActionType.read)


def is_sensitive_key(key: Any) -> bool:
    """True for credential-like keys; ``primaryKey``, ``keyword`` or ``sessionCount`` are not."""
    words = [w for w in _SEPARATORS.split(_CAMEL_BOUNDARY.sub(r"\1_\2", str(key)).lower()) if w]
    if not words:
        return False
    return words[-1] in SENSITIVE_WORDS or "".join(words) in SENSITIVE_NAMES


def sanitize_data(data: Any) -> Any:
    """Recursively replace values whose key looks like a credential."""
    if isinstance(data, dict):
        return {
            key: REDACTED if is_sensitive_key(key) else sanitize_data(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [sanitize_data(item) for item in data]
    return data


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def request_context(request: Request, started: Optional[float] = None) -> AuditContext:
    """Build the ``context`` block of an audit event from the current request.

    ``started`` is a ``time.monotonic()`` reading taken when handling began.
    """
    duration_ms = int((time.monotonic() - started) * 1000) if started is not None else None
    return AuditContext(
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        session_id=request.headers.get("x-session-id"),
        request_id=request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:12]}",
        path=request.url.path,
        method=request.method,
        duration_ms=duration_ms,
    )


def actor_from_user(user: Optional[CurrentUser]) -> AuditActor:
    if user is None:
        return SYSTEM_ACTOR
    return AuditActor(id=user.user_id, email=user.email, name=user.name, role=user.role)
