"""AuditEvent ORM model — append-only activity ledger.

Rows are written once by the audit logger and never updated. Read state for
notifications lives in its own table, never on this one.
"""
import enum
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Index, Enum as SAEnum
from app.database import Base


class ActionType(str, enum.Enum):
    create = "CREATE"
    read = "READ"
    update = "UPDATE"
    delete = "DELETE"
    login = "LOGIN"
    logout = "LOGOUT"
    export = "EXPORT"
    import_ = "IMPORT"
    state_change = "STATE_CHANGE"


class AuditModule(str, enum.Enum):
    users = "USERS"
    chemicals = "CHEMICALS"
    equipment = "EQUIPMENT"
    rooms = "ROOMS"
    calendar = "CALENDAR"
    orders = "ORDERS"
    security = "SECURITY"
    system = "SYSTEM"


class AuditStatus(str, enum.Enum):
    success = "SUCCESS"
    error = "ERROR"
    warning = "WARNING"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    # Snapshot of the acting principal at event time
    actor_id = Column(String(64), nullable=False)
    actor_email = Column(String(255), nullable=True)
    actor_name = Column(String(150), nullable=True)
    actor_role = Column(String(32), nullable=True)

    action_type = Column(SAEnum(ActionType), nullable=False, index=True)
    module = Column(SAEnum(AuditModule), nullable=False)
    entity = Column(String(100), nullable=False)
    entity_id = Column(String(100), nullable=True, index=True)

    details = Column(JSON, nullable=True)
    context = Column(JSON, nullable=True)
    status = Column(SAEnum(AuditStatus), nullable=False, default=AuditStatus.success, index=True)
    error = Column(Text, nullable=True)

    # Denormalized from details/error for free-text search
    reason = Column(Text, nullable=True)
    message = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_audit_events_actor_timestamp", "actor_id", "timestamp"),
        Index("ix_audit_events_module_timestamp", "module", "timestamp"),
    )
