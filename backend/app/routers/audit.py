"""Audit log API routes — ingestion, queries, statistics and retention."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from app.auth import AUDIT_ADMIN_ROLES, CurrentUser, has_capability, require_roles
from app.config import settings
from app.database import get_db
from app.dependencies import get_audit_logger
from app.models.audit_event import ActionType, AuditModule, AuditStatus
from app.models.user import Role
from app.schemas.audit import (
    AuditEventIn, AuditEventOut, AuditFeedResponse, AuditFilters, AuditLogRequest,
    AuditLogResult, AuditQueryResponse, AuditStats, PurgeResult,
)
from app.services import audit_query
from app.services.audit_context import actor_from_user, request_context
from app.services.audit_logger import AuditLogger

logger = logging.getLogger(__name__)
router = APIRouter()


def _scope_user(caller: CurrentUser, requested: Optional[str]) -> Optional[str]:
    """Admins may look at anyone; everyone else only at themselves."""
    if has_capability(caller, AUDIT_ADMIN_ROLES):
        return requested
    if requested and requested != caller.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot read another user's activity")
    return caller.user_id


def _filters(
    user_id: Optional[str] = Query(None, alias="userId"),
    module: Optional[AuditModule] = Query(None),
    action: Optional[ActionType] = Query(None),
    entity_id: Optional[str] = Query(None, alias="entityId"),
    status_: Optional[AuditStatus] = Query(None, alias="status"),
    search: Optional[str] = Query(None, max_length=200),
    start: Optional[str] = Query(None, description="ISO-8601 date or datetime"),
    end: Optional[str] = Query(None, description="ISO-8601 date or datetime"),
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
) -> AuditFilters:
    return AuditFilters(
        user_id=user_id,
        module=module,
        action=action,
        entity_id=entity_id,
        status=status_,
        search=search or None,
        start=audit_query.parse_range_bound(start),
        end=audit_query.parse_range_bound(end, end=True),
        limit=limit,
        offset=offset,
    )


@router.post("/logs", response_model=AuditLogResult, status_code=status.HTTP_201_CREATED)
def ingest_log(
    payload: AuditLogRequest,
    request: Request,
    caller: CurrentUser = Depends(require_roles()),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    """Record one structured event on behalf of the caller."""
    actor = payload.actor or actor_from_user(caller)
    if actor.id != caller.user_id and not has_capability(caller, AUDIT_ADMIN_ROLES):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot log on behalf of another user")

    context = request_context(request)
    if payload.context is not None:
        context = context.model_copy(update=payload.context.model_dump(exclude_none=True))

    event_id = audit_logger.record(AuditEventIn(
        action=payload.action,
        actor=actor,
        context=context,
        details=payload.details,
        status=payload.status,
        error=payload.error,
    ))
    return AuditLogResult(success=event_id is not None, id=event_id)


@router.get("/logs", response_model=AuditQueryResponse)
def list_logs(
    filters: AuditFilters = Depends(_filters),
    caller: CurrentUser = Depends(require_roles()),
    db: Session = Depends(get_db),
):
    """Filtered, offset-paginated history with a total count."""
    filters.user_id = _scope_user(caller, filters.user_id)
    entries = audit_query.query_events(db, filters)
    total = audit_query.count_events(db, filters)
    return AuditQueryResponse(entries=[AuditEventOut.from_row(e) for e in entries], total=total)


@router.get("/logs/feed", response_model=AuditFeedResponse)
def feed_logs(
    cursor: Optional[int] = Query(None, ge=1, description="Last id seen; returns strictly older events"),
    filters: AuditFilters = Depends(_filters),
    caller: CurrentUser = Depends(require_roles()),
    db: Session = Depends(get_db),
):
    """Cursor-paginated history for high-volume listings."""
    filters.user_id = _scope_user(caller, filters.user_id)
    items = audit_query.feed_events(db, filters, cursor=cursor)
    next_cursor = items[-1].id if len(items) == audit_query.clamp_limit(filters.limit) else None
    return AuditFeedResponse(items=[AuditEventOut.from_row(e) for e in items], next_cursor=next_cursor)


@router.get("/users/{user_id}/activity", response_model=list[AuditEventOut])
def user_activity(
    user_id: str,
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
    caller: CurrentUser = Depends(require_roles()),
    db: Session = Depends(get_db),
):
    """Activity of one user; defaults to the trailing 30 days."""
    user_id = _scope_user(caller, user_id)
    events = audit_query.get_user_activity(
        db, user_id,
        start=audit_query.parse_range_bound(start),
        end=audit_query.parse_range_bound(end, end=True),
    )
    return [AuditEventOut.from_row(e) for e in events]


@router.get("/modules/{module}/activity", response_model=list[AuditEventOut])
def module_activity(
    module: AuditModule,
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
    caller: CurrentUser = Depends(require_roles(*AUDIT_ADMIN_ROLES)),
    db: Session = Depends(get_db),
):
    """Activity within one module; defaults to the trailing 7 days."""
    events = audit_query.get_module_activity(
        db, module,
        start=audit_query.parse_range_bound(start),
        end=audit_query.parse_range_bound(end, end=True),
    )
    return [AuditEventOut.from_row(e) for e in events]


@router.get("/stats", response_model=AuditStats)
def stats(
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
    caller: CurrentUser = Depends(require_roles(*AUDIT_ADMIN_ROLES)),
    db: Session = Depends(get_db),
):
    return audit_query.get_stats(
        db,
        start=audit_query.parse_range_bound(start),
        end=audit_query.parse_range_bound(end, end=True),
    )


@router.delete("/logs", response_model=PurgeResult)
def purge_logs(
    older_than_days: int = Query(settings.AUDIT_RETENTION_DAYS, alias="olderThanDays", ge=1),
    caller: CurrentUser = Depends(require_roles(Role.admin.value)),
    db: Session = Depends(get_db),
):
    """Apply retention: delete events older than the given number of days."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
    deleted = audit_query.purge_events(db, cutoff)
    logger.info("User %s purged %d audit event(s)", caller.user_id, deleted)
    return PurgeResult(deleted=deleted, cutoff=cutoff)
