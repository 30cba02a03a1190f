"""User directory routes. Writes are admin-only and audited."""
import logging
import time
import uuid
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.auth import CurrentUser, require_roles
from app.database import get_db
from app.dependencies import get_audit_logger
from app.models.audit_event import AuditModule
from app.models.user import Role, User
from app.schemas.audit import AuditAction, AuditDetails, AuditEventIn
from app.schemas.user import UserCreate, UserUpdate, UserOut
from app.services.audit_context import action_type_from_method, actor_from_user, request_context
from app.services.audit_logger import AuditLogger

logger = logging.getLogger(__name__)
router = APIRouter()


def _snapshot(user: User) -> dict:
    return UserOut.model_validate(user).model_dump(mode="json")


@router.post("/", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def create_user(
    payload: UserCreate,
    request: Request,
    caller: CurrentUser = Depends(require_roles(Role.admin.value)),
    db: Session = Depends(get_db),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    """Create a user account."""
    started = time.monotonic()
    if db.query(User).filter(User.email == payload.email).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")
    data = payload.model_dump()
    data["user_id"] = data["user_id"] or str(uuid.uuid4())
    user = User(**data)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Created user %s (%s)", user.user_id, user.role.value)

    audit_logger.record(AuditEventIn(
        action=AuditAction(
            type=action_type_from_method(request.method), module=AuditModule.users,
            entity="user", entity_id=user.user_id,
        ),
        actor=actor_from_user(caller),
        context=request_context(request, started),
        details=AuditDetails(after=_snapshot(user)),
    ))
    return user


@router.get("/", response_model=list[UserOut])
def list_users(db: Session = Depends(get_db)):
    """List all users."""
    return db.query(User).order_by(User.name).all()


@router.get("/{user_id}", response_model=UserOut)
def get_user(user_id: str, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.user_id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.patch("/{user_id}", response_model=UserOut)
def update_user(
    user_id: str,
    payload: UserUpdate,
    request: Request,
    caller: CurrentUser = Depends(require_roles(Role.admin.value)),
    db: Session = Depends(get_db),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    """Partial update; the audit entry carries before/after snapshots and the changed fields."""
    started = time.monotonic()
    user = db.query(User).filter(User.user_id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    before = _snapshot(user)
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(user, field, value)
    db.commit()
    db.refresh(user)
    after = _snapshot(user)
    changes = [
        {"field": key, "from": before[key], "to": after[key]}
        for key in after if before.get(key) != after[key]
    ]
    logger.info("Updated user %s (%d field(s) changed)", user_id, len(changes))

    audit_logger.record(AuditEventIn(
        action=AuditAction(
            type=action_type_from_method(request.method), module=AuditModule.users,
            entity="user", entity_id=user_id,
        ),
        actor=actor_from_user(caller),
        context=request_context(request, started),
        details=AuditDetails(before=before, after=after, changes=changes),
    ))
    return user
