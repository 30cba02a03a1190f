"""Audit logger — best-effort write path for the activity ledger.

``record`` persists one event in its own session, then hands notification-worthy
events to a single background worker and returns without waiting for it.
Nothing in here raises into the caller: a failed write is logged and the
business operation that triggered it carries on.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Iterable, Optional, Union

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.models.audit_event import AuditEvent, AuditStatus
from app.schemas.audit import AuditEventIn
from app.schemas.notification import NotificationCreate
from app.services.audit_context import sanitize_data
from app.services.notification_rules import NotificationRules, describe_action
from app.services.notification_service import NotificationDispatcher

logger = logging.getLogger(__name__)

EventLike = Union[AuditEventIn, dict[str, Any]]


def build_row(event: AuditEventIn) -> AuditEvent:
    details = sanitize_data(event.details.model_dump(exclude_none=True)) if event.details else None
    metadata = (details or {}).get("metadata") or {}
    return AuditEvent(
        actor_id=event.actor.id,
        actor_email=event.actor.email,
        actor_name=event.actor.name,
        actor_role=event.actor.role,
        action_type=event.action.type,
        module=event.action.module,
        entity=event.action.entity,
        entity_id=event.action.entity_id,
        details=details,
        context=event.context.model_dump(by_alias=True, exclude_none=True),
        status=event.status,
        error=event.error,
        reason=(details or {}).get("reason"),
        message=event.error or metadata.get("message"),
    )


class AuditLogger:
    """Log writer. One instance per process, created at application startup."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        dispatcher: Optional[NotificationDispatcher] = None,
        rules: Optional[NotificationRules] = None,
    ):
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._rules = rules if rules is not None else NotificationRules()
        # A single worker keeps dispatches in write order.
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit-dispatch")
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    def record(self, event: EventLike) -> Optional[int]:
        """Persist one event. Returns its id, or None if it could not be written."""
        parsed = self._validate(event)
        if parsed is None:
            return None
        try:
            with self._session_factory() as session:
                row = build_row(parsed)
                session.add(row)
                session.flush()
                event_id = row.id
                session.commit()
        except Exception:
            logger.exception(
                "Failed to persist audit event %s/%s on %s by %s",
                parsed.action.module.value, parsed.action.type.value, parsed.action.entity, parsed.actor.id,
            )
            return None
        self._notify(parsed, event_id)
        return event_id

    def record_bulk(self, events: Iterable[EventLike]) -> int:
        """Persist several events in one transaction. Returns how many were written."""
        parsed = [p for p in (self._validate(e) for e in events) if p is not None]
        if not parsed:
            return 0
        try:
            with self._session_factory() as session:
                rows = [build_row(p) for p in parsed]
                session.add_all(rows)
                session.flush()
                ids = [row.id for row in rows]
                session.commit()
        except Exception:
            logger.exception("Failed to persist a batch of %d audit event(s)", len(parsed))
            return 0
        for event, event_id in zip(parsed, ids):
            self._notify(event, event_id)
        return len(ids)

    def force_flush(self, timeout: Optional[float] = None) -> bool:
        """Block until every dispatch submitted so far has finished. False on timeout."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self) -> None:
        self.force_flush()
        self._executor.shutdown(wait=True)

    @staticmethod
    def _validate(event: EventLike) -> Optional[AuditEventIn]:
        if isinstance(event, AuditEventIn):
            return event
        try:
            return AuditEventIn.model_validate(event)
        except ValidationError as exc:
            logger.warning("Dropped invalid audit event: %s", exc)
            return None

    def _notify(self, event: AuditEventIn, event_id: int) -> None:
        if self._dispatcher is None or event.status is not AuditStatus.success:
            return
        rule = self._rules.match(event.action.module.value, event.action.type.value)
        if rule is None:
            return
        draft = NotificationCreate(
            module=event.action.module.value,
            action_type=event.action.type.value,
            severity=rule.severity,
            title=rule.title,
            message=describe_action(event.actor.name, event.action.type.value, event.action.entity, event.action.entity_id),
            data={
                "auditEventId": event_id,
                "entity": event.action.entity,
                "entityId": event.action.entity_id,
                "triggeredBy": event.actor.model_dump(exclude_none=True),
            },
            target_roles=list(rule.target_roles),
        )
        try:
            future = self._executor.submit(self._dispatch, draft, event.actor.id)
        except RuntimeError:
            logger.warning("Audit logger is shut down; notification for event %s not dispatched", event_id)
            return
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_dispatch_done)

    def _dispatch(self, draft: NotificationCreate, triggered_by: str) -> int:
        with self._session_factory() as session:
            return self._dispatcher.create_and_dispatch(session, draft, triggered_by=triggered_by).id

    def _on_dispatch_done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        exc = future.exception()
        if exc is not None:
            logger.error("Notification dispatch failed", exc_info=exc)
