"""Read side of the audit ledger: filtered, paginated and aggregated queries.

Nothing here checks roles: routers scope the filters (e.g. force ``user_id``
for non-admins) before calling in. Database errors propagate to the caller.
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

import pytz
from fastapi import HTTPException, status
from sqlalchemy import func, or_
from sqlalchemy.orm import Query, Session

from app.config import settings
from app.models.audit_event import AuditEvent, AuditModule
from app.schemas.audit import AuditFilters, AuditStats, StatsDateRange

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to aware UTC; naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_range_bound(value: Optional[str], end: bool = False) -> Optional[datetime]:
    """Parse an ISO-8601 range bound from a query string.

    A bare date (``2026-10-01``) covers the whole day in the lab's timezone:
    midnight for a start bound, 23:59:59.999999 for an end bound.
    """
    if value is None or value == "":
        return None
    try:
        if len(value) == 10:
            day = date.fromisoformat(value)
            tz = pytz.timezone(settings.LAB_TIMEZONE)
            local = tz.localize(datetime.combine(day, time.max if end else time.min))
            return local.astimezone(timezone.utc)
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid date bound '{value}': expected ISO-8601 date or datetime",
        )


def clamp_limit(limit: Optional[int]) -> int:
    """Requested page size, bounded to [1, AUDIT_QUERY_MAX_LIMIT]."""
    if limit is None:
        return settings.AUDIT_QUERY_DEFAULT_LIMIT
    return max(1, min(limit, settings.AUDIT_QUERY_MAX_LIMIT))


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def apply_filters(query: Query, filters: AuditFilters) -> Query:
    if filters.user_id:
        query = query.filter(AuditEvent.actor_id == filters.user_id)
    if filters.module:
        query = query.filter(AuditEvent.module == filters.module)
    if filters.action:
        query = query.filter(AuditEvent.action_type == filters.action)
    if filters.entity_id:
        query = query.filter(AuditEvent.entity_id == filters.entity_id)
    if filters.status:
        query = query.filter(AuditEvent.status == filters.status)
    if filters.start:
        query = query.filter(AuditEvent.timestamp >= as_utc(filters.start))
    if filters.end:
        query = query.filter(AuditEvent.timestamp <= as_utc(filters.end))
    if filters.search:
        pattern = f"%{_escape_like(filters.search.strip())}%"
        query = query.filter(or_(
            AuditEvent.entity.ilike(pattern, escape="\\"),
            AuditEvent.reason.ilike(pattern, escape="\\"),
            AuditEvent.message.ilike(pattern, escape="\\"),
        ))
    return query


def query_events(db: Session, filters: AuditFilters) -> list[AuditEvent]:
    """Matching events, newest first, ``limit``/``offset`` paginated."""
    query = apply_filters(db.query(AuditEvent), filters)
    return (
        query.order_by(AuditEvent.timestamp.desc(), AuditEvent.id.desc())
        .offset(max(filters.offset, 0))
        .limit(clamp_limit(filters.limit))
        .all()
    )


def count_events(db: Session, filters: AuditFilters) -> int:
    return apply_filters(db.query(func.count(AuditEvent.id)), filters).scalar() or 0


def feed_events(db: Session, filters: AuditFilters, cursor: Optional[int] = None) -> list[AuditEvent]:
    """Cursor page: events with id strictly below ``cursor``, highest id first.

    Ids only grow, so a page never overlaps or skips rows of the previous one
    even while new events are being written.
    """
    query = apply_filters(db.query(AuditEvent), filters)
    if cursor is not None:
        query = query.filter(AuditEvent.id < cursor)
    return query.order_by(AuditEvent.id.desc()).limit(clamp_limit(filters.limit)).all()


def _window(start: Optional[datetime], end: Optional[datetime], days: int) -> tuple[datetime, Optional[datetime]]:
    if start is None and end is None:
        return _utcnow() - timedelta(days=days), None
    if start is None:
        return as_utc(end) - timedelta(days=days), end
    return start, end


def get_user_activity(
    db: Session, user_id: str, start: Optional[datetime] = None, end: Optional[datetime] = None,
) -> list[AuditEvent]:
    """Events by one actor; trailing AUDIT_USER_WINDOW_DAYS when no range is given."""
    start, end = _window(start, end, settings.AUDIT_USER_WINDOW_DAYS)
    return query_events(db, AuditFilters(
        user_id=user_id, start=start, end=end, limit=settings.AUDIT_QUERY_MAX_LIMIT,
    ))


def get_module_activity(
    db: Session, module: AuditModule, start: Optional[datetime] = None, end: Optional[datetime] = None,
) -> list[AuditEvent]:
    """Events in one module; trailing AUDIT_MODULE_WINDOW_DAYS when no range is given."""
    start, end = _window(start, end, settings.AUDIT_MODULE_WINDOW_DAYS)
    return query_events(db, AuditFilters(
        module=module, start=start, end=end, limit=settings.AUDIT_QUERY_MAX_LIMIT,
    ))


def get_stats(db: Session, start: Optional[datetime] = None, end: Optional[datetime] = None) -> AuditStats:
    scope = AuditFilters(start=start, end=end)

    def grouped(column) -> dict[str, int]:
        rows = apply_filters(db.query(column, func.count(AuditEvent.id)), scope).group_by(column).all()
        return {getattr(key, "value", key): count for key, count in rows}

    total, earliest, latest = apply_filters(
        db.query(func.count(AuditEvent.id), func.min(AuditEvent.timestamp), func.max(AuditEvent.timestamp)),
        scope,
    ).one()
    return AuditStats(
        total_entries=total or 0,
        by_module=grouped(AuditEvent.module),
        by_action=grouped(AuditEvent.action_type),
        by_user=grouped(AuditEvent.actor_id),
        by_status=grouped(AuditEvent.status),
        date_range=StatsDateRange(earliest=earliest, latest=latest),
    )


def purge_events(db: Session, older_than: datetime) -> int:
    """Delete events older than ``older_than`` (retention). Returns rows removed."""
    deleted = (
        db.query(AuditEvent)
        .filter(AuditEvent.timestamp < as_utc(older_than))
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info("Purged %d audit event(s) older than %s", deleted, older_than.isoformat())
    return deleted
