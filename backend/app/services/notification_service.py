"""Notification dispatcher and read side.

Responsibilities:
- Persist each notification exactly once, with its addressing (users / roles)
- Resolve recipients: explicit user ids plus active users holding a target role,
  filtered by stored preferences (user row > role row > configured default)
- Push to recipients' open live channels, best-effort
- Per-user read state via atomic upserts on (notification_id, user_id)
"""
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from fastapi import HTTPException, status
from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from app.auth import CurrentUser
from app.models.notification import (
    Notification, NotificationTarget, NotificationReadStatus, NotificationPreference,
    Severity, SEVERITY_RANK, TargetKind,
)
from app.models.user import Role, User
from app.schemas.notification import NotificationCreate, NotificationOut, PreferenceIn
from app.services.channel_manager import ChannelManager
from app.services.notification_rules import NotificationRules, PREFERENCE_ROLES, default_preference

logger = logging.getLogger(__name__)

_UPSERT_CHUNK = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def notification_out(notification: Notification, read: Optional[NotificationReadStatus] = None) -> NotificationOut:
    return NotificationOut(
        id=notification.id,
        created_at=notification.created_at,
        module=notification.module,
        action_type=notification.action_type,
        severity=notification.severity,
        title=notification.title,
        message=notification.message,
        data=notification.data,
        target_user_ids=notification.target_user_ids,
        target_roles=notification.target_roles,
        triggered_by=notification.triggered_by,
        is_read=bool(read and read.is_read),
        read_at=read.read_at if read else None,
    )


def visible_to(user_id: str, role: str):
    """SQL criterion: notification addressed to ``user_id`` directly or to ``role``."""
    return Notification.targets.any(
        or_(
            and_(NotificationTarget.kind == TargetKind.user, NotificationTarget.value == user_id),
            and_(NotificationTarget.kind == TargetKind.role, NotificationTarget.value == role),
        )
    )


def _read_join(user_id: str):
    return and_(
        NotificationReadStatus.notification_id == Notification.id,
        NotificationReadStatus.user_id == user_id,
    )


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    elif dialect in ("mysql", "mariadb"):
        from sqlalchemy.dialects.mysql import insert
    else:
        raise NotImplementedError(f"No atomic upsert available for dialect '{dialect}'")
    return dialect, insert


def _upsert_read_status(db: Session, notification_ids: list[int], user_id: str) -> int:
    """INSERT ... ON CONFLICT keyed on (notification_id, user_id); first read_at wins."""
    if not notification_ids:
        return 0
    dialect, insert = _insert_for(db)
    now = _utcnow()
    for start in range(0, len(notification_ids), _UPSERT_CHUNK):
        chunk = notification_ids[start:start + _UPSERT_CHUNK]
        stmt = insert(NotificationReadStatus).values([
            {"notification_id": nid, "user_id": user_id, "is_read": True, "read_at": now}
            for nid in chunk
        ])
        if dialect in ("mysql", "mariadb"):
            stmt = stmt.on_duplicate_key_update(
                is_read=True,
                read_at=func.coalesce(NotificationReadStatus.read_at, stmt.inserted.read_at),
            )
        else:
            stmt = stmt.on_conflict_do_update(
                index_elements=["notification_id", "user_id"],
                set_={
                    "is_read": True,
                    "read_at": func.coalesce(NotificationReadStatus.read_at, stmt.excluded.read_at),
                },
            )
        db.execute(stmt)
    db.commit()
    return len(notification_ids)


class NotificationDispatcher:
    """Creates notifications and fans them out to the live channels it was given."""

    def __init__(self, channels: Optional[ChannelManager] = None, default_enabled: bool = True):
        self._channels = channels
        self._default_enabled = default_enabled

    def create_and_dispatch(
        self, db: Session, draft: NotificationCreate, triggered_by: Optional[str] = None,
    ) -> Notification:
        notification = Notification(
            module=draft.module,
            action_type=draft.action_type,
            severity=draft.severity,
            title=draft.title,
            message=draft.message,
            data=draft.data,
            triggered_by=triggered_by,
        )
        for user_id in dict.fromkeys(draft.target_user_ids):
            notification.targets.append(NotificationTarget(kind=TargetKind.user, value=user_id))
        for role in dict.fromkeys(draft.target_roles):
            notification.targets.append(NotificationTarget(kind=TargetKind.role, value=role))
        db.add(notification)
        db.commit()
        db.refresh(notification)
        logger.info(
            "Created notification %s (%s/%s, %s) for users=%s roles=%s",
            notification.id, draft.module, draft.action_type, draft.severity.value,
            draft.target_user_ids, draft.target_roles,
        )

        if self._channels is not None:
            try:
                self._fan_out(db, notification)
            except Exception:
                logger.exception("Live delivery of notification %s failed", notification.id)
        return notification

    def _fan_out(self, db: Session, notification: Notification) -> int:
        recipients = self.resolve_recipients(db, notification)
        payload = {
            "type": "notification",
            "timestamp": _utcnow().isoformat(),
            "data": notification_out(notification).model_dump(mode="json", by_alias=True),
        }
        delivered = self._channels.push_to_users(recipients, payload)
        logger.debug("Notification %s pushed to %d live channel(s)", notification.id, delivered)
        return delivered

    def resolve_recipients(self, db: Session, notification: Notification) -> list[str]:
        """User ids that should receive a live push for ``notification``."""
        explicit = set(notification.target_user_ids)
        known_roles = {r.value for r in Role}
        roles = {r for r in notification.target_roles if r in known_roles}

        criteria = []
        if explicit:
            criteria.append(User.user_id.in_(sorted(explicit)))
        if roles:
            criteria.append(and_(User.role.in_([Role(r) for r in roles]), User.is_active.is_(True)))
        users = db.query(User).filter(or_(*criteria)).all() if criteria else []

        candidates: dict[str, Optional[str]] = {uid: None for uid in explicit}
        for user in users:
            if user.user_id in explicit or (user.is_active and user.role.value in roles):
                candidates[user.user_id] = user.role.value

        prefs = db.query(NotificationPreference).filter(
            NotificationPreference.module == notification.module,
            NotificationPreference.action_type == notification.action_type,
        ).all()
        user_prefs = {p.user_id: p for p in prefs if p.user_id}
        role_prefs = {p.role: p for p in prefs if not p.user_id}

        recipients = []
        for user_id, role in candidates.items():
            pref = user_prefs.get(user_id) or (role_prefs.get(role) if role else None)
            if self._allows(pref, notification.severity):
                recipients.append(user_id)
        return sorted(recipients)

    def _allows(self, pref: Optional[NotificationPreference], severity: Severity) -> bool:
        if pref is None:
            return self._default_enabled
        if not pref.enabled:
            return False
        if pref.min_severity is not None:
            return SEVERITY_RANK[severity] >= SEVERITY_RANK[pref.min_severity]
        return True

    def mark_read(self, db: Session, user: CurrentUser, notification_id: int) -> bool:
        """Idempotently mark one notification read for ``user``."""
        notification = db.query(Notification).filter(Notification.id == notification_id).first()
        if not notification:
            raise HTTPException(status_code=404, detail="Notification not found")
        visible = db.query(Notification.id).filter(
            Notification.id == notification_id, visible_to(user.user_id, user.role),
        ).first()
        if not visible:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Notification not addressed to you")
        _upsert_read_status(db, [notification_id], user.user_id)
        return True

    def mark_all_read(self, db: Session, user: CurrentUser) -> int:
        """Mark every notification visible to ``user`` right now as read."""
        ids = [
            row.id for row in
            db.query(Notification.id).filter(visible_to(user.user_id, user.role)).all()
        ]
        updated = _upsert_read_status(db, ids, user.user_id)
        logger.info("Marked %d notification(s) read for user %s", updated, user.user_id)
        return updated


def list_for_user(
    db: Session,
    user: CurrentUser,
    module: Optional[str] = None,
    severity: Optional[Severity] = None,
    unread_only: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[NotificationOut], int, int]:
    """Notifications visible to ``user``, newest first, with (total, unread) counts."""
    base = (
        db.query(Notification, NotificationReadStatus)
        .outerjoin(NotificationReadStatus, _read_join(user.user_id))
        .filter(visible_to(user.user_id, user.role))
    )
    if module:
        base = base.filter(Notification.module == module)
    if severity:
        base = base.filter(Notification.severity == severity)
    unread_criterion = or_(NotificationReadStatus.is_read.is_(None), NotificationReadStatus.is_read.is_(False))

    unread = base.filter(unread_criterion).count()
    if unread_only:
        base = base.filter(unread_criterion)
    total = base.count()
    rows = (
        base.order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit).offset(offset).all()
    )
    return [notification_out(n, r) for n, r in rows], total, unread


def notification_stats(db: Session, user: CurrentUser) -> dict:
    visible = visible_to(user.user_id, user.role)
    total = db.query(func.count(Notification.id)).filter(visible).scalar() or 0
    read = (
        db.query(func.count(Notification.id))
        .join(NotificationReadStatus, _read_join(user.user_id))
        .filter(visible, NotificationReadStatus.is_read.is_(True))
        .scalar() or 0
    )
    by_module = dict(
        db.query(Notification.module, func.count(Notification.id))
        .filter(visible).group_by(Notification.module).all()
    )
    by_severity = {
        sev.value: count for sev, count in
        db.query(Notification.severity, func.count(Notification.id))
        .filter(visible).group_by(Notification.severity).all()
    }
    return {
        "total": total,
        "unread": total - read,
        "by_module": by_module,
        "by_severity": by_severity,
    }


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------
def list_preferences(db: Session, user_id: Optional[str] = None) -> list[NotificationPreference]:
    query = db.query(NotificationPreference)
    if user_id is not None:
        query = query.filter(NotificationPreference.user_id == user_id)
    return query.order_by(
        NotificationPreference.role, NotificationPreference.module, NotificationPreference.action_type,
    ).all()


def upsert_preferences(db: Session, preferences: Iterable[PreferenceIn], user_id: str = "") -> int:
    """Create or update preference rows; ``user_id`` "" means role-wide."""
    updated = 0
    for pref in preferences:
        row = db.query(NotificationPreference).filter(
            NotificationPreference.role == pref.role,
            NotificationPreference.user_id == user_id,
            NotificationPreference.module == pref.module,
            NotificationPreference.action_type == pref.action_type,
        ).first()
        if row is None:
            row = NotificationPreference(
                role=pref.role, user_id=user_id, module=pref.module, action_type=pref.action_type,
            )
            db.add(row)
        row.enabled = pref.enabled
        row.min_severity = pref.min_severity
        updated += 1
    db.commit()
    return updated


def seed_default_preferences(db: Session, rules: NotificationRules) -> int:
    """Insert the baseline role matrix for every rule; existing rows are left alone."""
    existing = {
        (p.role, p.module, p.action_type)
        for p in db.query(NotificationPreference).filter(NotificationPreference.user_id == "").all()
    }
    created = 0
    for (module, action_type), _rule in rules:
        for role in PREFERENCE_ROLES:
            if (role, module, action_type) in existing:
                continue
            db.add(NotificationPreference(
                role=role, user_id="", module=module, action_type=action_type,
                enabled=default_preference(role, module),
            ))
            created += 1
    db.commit()
    logger.info("Seeded %d notification preference row(s)", created)
    return created
