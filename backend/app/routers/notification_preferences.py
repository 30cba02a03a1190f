"""Admin routes for the role x module x actionType preference matrix."""
import logging
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.auth import CurrentUser, require_roles
from app.database import get_db
from app.models.user import Role
from app.schemas.notification import PreferenceBulkUpdate, PreferenceOut, PreferenceUpdateResult
from app.services import notification_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/", response_model=list[PreferenceOut])
def list_preferences(
    _: CurrentUser = Depends(require_roles(Role.admin.value)),
    db: Session = Depends(get_db),
):
    return notification_service.list_preferences(db, user_id="")


@router.put("/", response_model=PreferenceUpdateResult)
def update_preferences(
    payload: PreferenceBulkUpdate,
    user: CurrentUser = Depends(require_roles(Role.admin.value)),
    db: Session = Depends(get_db),
):
    updated = notification_service.upsert_preferences(db, payload.preferences)
    logger.info("User %s updated %d role preference(s)", user.user_id, updated)
    return PreferenceUpdateResult(updated=updated)


@router.post("/seed", response_model=PreferenceUpdateResult)
def seed_preferences(
    request: Request,
    _: CurrentUser = Depends(require_roles(Role.admin.value)),
    db: Session = Depends(get_db),
):
    """Fill in missing role rows from the notification rules; existing rows are kept."""
    created = notification_service.seed_default_preferences(db, request.app.state.notification_rules)
    return PreferenceUpdateResult(updated=created)
