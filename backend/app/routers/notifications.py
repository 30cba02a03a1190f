"""Notification API routes."""
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.auth import CurrentUser, get_optional_user, has_capability, require_roles
from app.database import get_db
from app.dependencies import get_channel_manager, get_dispatcher
from app.models.notification import Severity
from app.models.user import Role
from app.schemas.notification import (
    MarkReadRequest, MarkReadResult, NotificationCreate, NotificationList, NotificationOut,
    NotificationStats, PreferenceIn, PreferenceOut, UserPreferenceIn,
)
from app.services import notification_service
from app.services.channel_manager import ChannelManager, UnauthorizedSubscription, event_stream
from app.services.notification_service import NotificationDispatcher

logger = logging.getLogger(__name__)
router = APIRouter()

SENDER_ROLES = (Role.admin.value, Role.admin_labo.value)


@router.get("/", response_model=NotificationList)
def list_notifications(
    module: Optional[str] = Query(None),
    severity: Optional[Severity] = Query(None),
    unread_only: bool = Query(False, alias="unreadOnly"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(require_roles()),
    db: Session = Depends(get_db),
):
    """Notifications addressed to the caller (directly or via role), newest first."""
    notifications, total, unread = notification_service.list_for_user(
        db, user, module=module, severity=severity, unread_only=unread_only, limit=limit, offset=offset,
    )
    return NotificationList(notifications=notifications, total=total, unread=unread)


@router.get("/stats", response_model=NotificationStats)
def notification_stats(user: CurrentUser = Depends(require_roles()), db: Session = Depends(get_db)):
    return notification_service.notification_stats(db, user)


@router.post("/", response_model=NotificationOut, status_code=status.HTTP_201_CREATED)
def create_notification(
    payload: NotificationCreate,
    user: CurrentUser = Depends(require_roles(*SENDER_ROLES)),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Persist a notification and push it to connected recipients."""
    notification = dispatcher.create_and_dispatch(db, payload, triggered_by=user.user_id)
    return notification_service.notification_out(notification)


@router.patch("/", response_model=MarkReadResult)
def mark_read(
    payload: Optional[MarkReadRequest] = Body(None),
    user: CurrentUser = Depends(require_roles()),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Mark one notification read (``notificationId``) or, with no body, all of them."""
    if payload is not None and payload.notification_id is not None:
        dispatcher.mark_read(db, user, payload.notification_id)
        return MarkReadResult(success=True, updated=1)
    updated = dispatcher.mark_all_read(db, user)
    return MarkReadResult(success=True, updated=updated)


@router.post("/{notification_id}/read", response_model=MarkReadResult)
def mark_one_read(
    notification_id: int,
    user: CurrentUser = Depends(require_roles()),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    dispatcher.mark_read(db, user, notification_id)
    return MarkReadResult(success=True, updated=1)


@router.get("/preferences", response_model=list[PreferenceOut])
def my_preferences(user: CurrentUser = Depends(require_roles()), db: Session = Depends(get_db)):
    return notification_service.list_preferences(db, user_id=user.user_id)


@router.put("/preferences", response_model=PreferenceOut)
def set_my_preference(
    payload: UserPreferenceIn,
    user: CurrentUser = Depends(require_roles()),
    db: Session = Depends(get_db),
):
    """Override the role-wide preference for one (module, actionType) for the caller only."""
    notification_service.upsert_preferences(db, [PreferenceIn(
        role=user.role,
        module=payload.module,
        action_type=payload.action_type,
        enabled=payload.enabled,
        min_severity=payload.min_severity,
    )], user_id=user.user_id)
    rows = [
        p for p in notification_service.list_preferences(db, user_id=user.user_id)
        if p.module == payload.module and p.action_type == payload.action_type
    ]
    return rows[0]


@router.get("/stream")
async def stream_notifications(
    request: Request,
    user_id: Optional[str] = Query(None, alias="userId"),
    caller: Optional[CurrentUser] = Depends(get_optional_user),
    channels: ChannelManager = Depends(get_channel_manager),
):
    """Server-Sent Events: ``connected``, then notifications and a heartbeat every 30s."""
    try:
        channels.check_subscriber(user_id, caller.role if caller else None)
    except UnauthorizedSubscription as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))
    if caller is None or caller.is_guest:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthenticated")
    if caller.user_id != user_id and not has_capability(caller, (Role.admin.value,)):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot subscribe for another user")

    logger.info("SSE subscription requested by %s for user %s", caller.user_id, user_id)
    return StreamingResponse(
        event_stream(channels, user_id, is_disconnected=request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
