"""Pydantic schemas for Users."""
from __future__ import annotations
from datetime import datetime
from typing import Optional
from pydantic import BaseModel

from app.models.user import Role


class UserCreate(BaseModel):
    email: str
    name: str
    role: Role = Role.student
    user_id: Optional[str] = None


class UserUpdate(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    role: Optional[Role] = None
    is_active: Optional[bool] = None


class UserOut(BaseModel):
    user_id: str
    email: str
    name: str
    role: Role
    is_active: bool
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
