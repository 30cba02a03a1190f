"""Notification ORM models."""
import enum
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, JSON, ForeignKey,
    UniqueConstraint, Index, Enum as SAEnum,
)
from sqlalchemy.orm import relationship
from app.database import Base


class Severity(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


SEVERITY_RANK = {Severity.low: 0, Severity.medium: 1, Severity.high: 2, Severity.critical: 3}


class TargetKind(str, enum.Enum):
    user = "user"
    role = "role"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    module = Column(String(32), nullable=False, index=True)
    action_type = Column(String(64), nullable=False)
    severity = Column(SAEnum(Severity), nullable=False, default=Severity.medium)
    title = Column(String(255), nullable=True)
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    triggered_by = Column(String(64), nullable=True)

    targets = relationship(
        "NotificationTarget", back_populates="notification",
        cascade="all, delete-orphan", lazy="selectin",
    )

    @property
    def target_user_ids(self) -> list[str]:
        return [t.value for t in self.targets if t.kind == TargetKind.user]

    @property
    def target_roles(self) -> list[str]:
        return [t.value for t in self.targets if t.kind == TargetKind.role]


class NotificationTarget(Base):
    """Addressing of a notification: one row per explicit user id or target role."""

    __tablename__ = "notification_targets"

    notification_id = Column(Integer, ForeignKey("notifications.id", ondelete="CASCADE"), primary_key=True)
    kind = Column(SAEnum(TargetKind), primary_key=True)
    value = Column(String(64), primary_key=True)

    notification = relationship("Notification", back_populates="targets")

    __table_args__ = (Index("ix_notification_targets_kind_value", "kind", "value"),)


class NotificationReadStatus(Base):
    __tablename__ = "notification_read_status"

    id = Column(Integer, primary_key=True, autoincrement=True)
    notification_id = Column(Integer, ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(64), nullable=False, index=True)
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("notification_id", "user_id", name="uq_notification_read_status_notification_user"),
    )


class NotificationPreference(Base):
    """Per-(role, module, actionType) switch for live delivery.

    A row with ``user_id`` set overrides the role-wide row for that user.
    """

    __tablename__ = "notification_preferences"

    id = Column(Integer, primary_key=True, autoincrement=True)
    role = Column(String(32), nullable=False)
    user_id = Column(String(64), nullable=False, default="")  # "" = role-wide
    module = Column(String(32), nullable=False)
    action_type = Column(String(64), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    min_severity = Column(SAEnum(Severity), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("role", "user_id", "module", "action_type", name="uq_notification_preferences_scope"),
    )
