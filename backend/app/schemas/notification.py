"""Pydantic schemas for notifications, read state and preferences."""
from __future__ import annotations
from datetime import datetime
from typing import Any, Optional
from pydantic import Field, field_validator

from app.models.notification import Severity
from app.schemas.base import CamelModel


class NotificationCreate(CamelModel):
    module: str = Field(min_length=1, max_length=32)
    action_type: str = Field(min_length=1, max_length=64)
    severity: Severity = Severity.medium
    message: str = Field(min_length=1)
    title: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    target_user_ids: list[str] = []
    target_roles: list[str] = []

    @field_validator("target_user_ids", mode="before")
    @classmethod
    def _ids_as_strings(cls, value):
        if value is None:
            return []
        return [str(v) for v in value]


class NotificationOut(CamelModel):
    id: int
    created_at: datetime
    module: str
    action_type: str
    severity: Severity
    title: Optional[str] = None
    message: str
    data: Optional[dict[str, Any]] = None
    target_user_ids: list[str] = []
    target_roles: list[str] = []
    triggered_by: Optional[str] = None
    is_read: bool = False
    read_at: Optional[datetime] = None


class NotificationList(CamelModel):
    notifications: list[NotificationOut]
    total: int
    unread: int


class NotificationStats(CamelModel):
    total: int
    unread: int
    by_module: dict[str, int]
    by_severity: dict[str, int]


class MarkReadRequest(CamelModel):
    notification_id: Optional[int] = None


class MarkReadResult(CamelModel):
    success: bool
    updated: int = 0


class PreferenceIn(CamelModel):
    role: str
    module: str
    action_type: str
    enabled: bool
    min_severity: Optional[Severity] = None


class UserPreferenceIn(CamelModel):
    module: str
    action_type: str
    enabled: bool
    min_severity: Optional[Severity] = None


class PreferenceOut(CamelModel):
    id: int
    role: str
    user_id: str = ""
    module: str
    action_type: str
    enabled: bool
    min_severity: Optional[Severity] = None


class PreferenceBulkUpdate(CamelModel):
    preferences: list[PreferenceIn]


class PreferenceUpdateResult(CamelModel):
    updated: int
