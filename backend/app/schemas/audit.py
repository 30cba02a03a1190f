"""Pydantic schemas for audit events, queries and statistics."""
from __future__ import annotations
from datetime import datetime
from typing import Any, Optional
from pydantic import Field

from app.models.audit_event import ActionType, AuditModule, AuditStatus, AuditEvent
from app.schemas.base import CamelModel


class AuditActor(CamelModel):
    id: str = Field(min_length=1)
    email: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None


SYSTEM_ACTOR = AuditActor(id="system", email="system@localhost", name="System", role="SYSTEM")


class AuditAction(CamelModel):
    type: ActionType
    module: AuditModule
    entity: str = Field(min_length=1, max_length=100)
    entity_id: Optional[str] = Field(default=None, max_length=100)


class AuditContext(CamelModel):
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    request_id: Optional[str] = None
    path: Optional[str] = None
    method: Optional[str] = None
    duration_ms: Optional[int] = None


class AuditDetails(CamelModel):
    before: Optional[Any] = None
    after: Optional[Any] = None
    changes: list[Any] = []
    reason: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class AuditEventIn(CamelModel):
    """One event handed to the audit logger."""

    action: AuditAction
    actor: AuditActor = Field(alias="user")
    context: AuditContext = Field(default_factory=AuditContext)
    details: Optional[AuditDetails] = None
    status: AuditStatus = AuditStatus.success
    error: Optional[str] = None


class AuditLogRequest(CamelModel):
    """Body of the ingestion endpoint. ``user`` defaults to the caller."""

    action: AuditAction
    actor: Optional[AuditActor] = Field(default=None, alias="user")
    context: Optional[AuditContext] = None
    details: Optional[AuditDetails] = None
    status: AuditStatus = AuditStatus.success
    error: Optional[str] = None


class AuditLogResult(CamelModel):
    success: bool
    id: Optional[int] = None


class AuditEventOut(CamelModel):
    id: int
    timestamp: datetime
    actor: AuditActor = Field(serialization_alias="user")
    action: AuditAction
    details: Optional[dict[str, Any]] = None
    context: Optional[dict[str, Any]] = None
    status: AuditStatus
    error: Optional[str] = None

    @classmethod
    def from_row(cls, row: AuditEvent) -> "AuditEventOut":
        return cls(
            id=row.id,
            timestamp=row.timestamp,
            actor=AuditActor(id=row.actor_id, email=row.actor_email, name=row.actor_name, role=row.actor_role),
            action=AuditAction(type=row.action_type, module=row.module, entity=row.entity, entity_id=row.entity_id),
            details=row.details,
            context=row.context,
            status=row.status,
            error=row.error,
        )


class AuditFilters(CamelModel):
    """Already-scoped filter set for the query engine; all fields combine with AND."""

    user_id: Optional[str] = None
    module: Optional[AuditModule] = None
    action: Optional[ActionType] = None
    entity_id: Optional[str] = None
    status: Optional[AuditStatus] = None
    search: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: Optional[int] = None
    offset: int = 0


class AuditQueryResponse(CamelModel):
    entries: list[AuditEventOut]
    total: int


class AuditFeedResponse(CamelModel):
    items: list[AuditEventOut]
    next_cursor: Optional[int] = None


class StatsDateRange(CamelModel):
    earliest: Optional[datetime] = None
    latest: Optional[datetime] = None


class AuditStats(CamelModel):
    total_entries: int
    by_module: dict[str, int]
    by_action: dict[str, int]
    by_user: dict[str, int]
    by_status: dict[str, int]
    date_range: StatsDateRange


class PurgeResult(CamelModel):
    deleted: int
    cutoff: datetime
