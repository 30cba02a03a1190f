"""initial_schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Creates the user directory, the audit ledger and the notification tables:
users, audit_events, notifications, notification_targets,
notification_read_status, notification_preferences.
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Enum columns store member names, matching the ORM's SAEnum(...) columns.
role_enum = sa.Enum("admin", "admin_labo", "teacher", "laborantin", "student", "guest", "system", name="role")
action_enum = sa.Enum(
    "create", "read", "update", "delete", "login", "logout", "export", "import_", "state_change",
    name="actiontype",
)
module_enum = sa.Enum(
    "users", "chemicals", "equipment", "rooms", "calendar", "orders", "security", "system",
    name="auditmodule",
)
status_enum = sa.Enum("success", "error", "warning", name="auditstatus")
severity_enum = sa.Enum("low", "medium", "high", "critical", name="severity")
target_kind_enum = sa.Enum("user", "role", name="targetkind")


def upgrade() -> None:
    # --- users ---
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(150), nullable=False),
        sa.Column("role", role_enum, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_users_role", "users", ["role"])

    # --- audit_events ---
    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("actor_email", sa.String(255), nullable=True),
        sa.Column("actor_name", sa.String(150), nullable=True),
        sa.Column("actor_role", sa.String(32), nullable=True),
        sa.Column("action_type", action_enum, nullable=False),
        sa.Column("module", module_enum, nullable=False),
        sa.Column("entity", sa.String(100), nullable=False),
        sa.Column("entity_id", sa.String(100), nullable=True),
        sa.Column("details", sa.JSON, nullable=True),
        sa.Column("context", sa.JSON, nullable=True),
        sa.Column("status", status_enum, nullable=False),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("message", sa.Text, nullable=True),
    )
    op.create_index("ix_audit_events_timestamp", "audit_events", ["timestamp"])
    op.create_index("ix_audit_events_action_type", "audit_events", ["action_type"])
    op.create_index("ix_audit_events_entity_id", "audit_events", ["entity_id"])
    op.create_index("ix_audit_events_status", "audit_events", ["status"])
    op.create_index("ix_audit_events_actor_timestamp", "audit_events", ["actor_id", "timestamp"])
    op.create_index("ix_audit_events_module_timestamp", "audit_events", ["module", "timestamp"])

    # --- notifications ---
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("module", sa.String(32), nullable=False),
        sa.Column("action_type", sa.String(64), nullable=False),
        sa.Column("severity", severity_enum, nullable=False),
        sa.Column("title", sa.String(255), nullable=True),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("data", sa.JSON, nullable=True),
        sa.Column("triggered_by", sa.String(64), nullable=True),
    )
    op.create_index("ix_notifications_created_at", "notifications", ["created_at"])
    op.create_index("ix_notifications_module", "notifications", ["module"])

    # --- notification_targets ---
    op.create_table(
        "notification_targets",
        sa.Column(
            "notification_id", sa.Integer,
            sa.ForeignKey("notifications.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("kind", target_kind_enum, primary_key=True),
        sa.Column("value", sa.String(64), primary_key=True),
    )
    op.create_index("ix_notification_targets_kind_value", "notification_targets", ["kind", "value"])

    # --- notification_read_status ---
    op.create_table(
        "notification_read_status",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "notification_id", sa.Integer,
            sa.ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("is_read", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("notification_id", "user_id", name="uq_notification_read_status_notification_user"),
    )
    op.create_index("ix_notification_read_status_user_id", "notification_read_status", ["user_id"])

    # --- notification_preferences ---
    op.create_table(
        "notification_preferences",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("role", sa.String(32), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False, server_default=""),
        sa.Column("module", sa.String(32), nullable=False),
        sa.Column("action_type", sa.String(64), nullable=False),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("min_severity", severity_enum, nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("role", "user_id", "module", "action_type", name="uq_notification_preferences_scope"),
    )


def downgrade() -> None:
    op.drop_table("notification_preferences")
    op.drop_table("notification_read_status")
    op.drop_table("notification_targets")
    op.drop_table("notifications")
    op.drop_table("audit_events")
    op.drop_table("users")
    for enum in (target_kind_enum, severity_enum, status_enum, module_enum, action_enum, role_enum):
        enum.drop(op.get_bind(), checkfirst=True)
