"""User ORM model — the directory the notification dispatcher resolves roles against."""
import enum
import uuid
from sqlalchemy import Column, String, Boolean, DateTime, Enum as SAEnum
from sqlalchemy.sql import func
from app.database import Base


class Role(str, enum.Enum):
    admin = "ADMIN"
    admin_labo = "ADMINLABO"
    teacher = "TEACHER"
    laborantin = "LABORANTIN"
    student = "STUDENT"
    guest = "GUEST"
    system = "SYSTEM"


class User(Base):
    __tablename__ = "users"

    user_id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(150), nullable=False)
    role = Column(SAEnum(Role), nullable=False, default=Role.student, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
