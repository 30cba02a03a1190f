"""FastAPI application entry point."""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.database import Base, SessionLocal, engine

# Import routers
from app.routers import audit, notification_preferences, notifications, users
from app.services.audit_logger import AuditLogger
from app.services.channel_manager import ChannelManager
from app.services.notification_rules import NotificationRules
from app.services.notification_service import NotificationDispatcher

# Import all models so Base.metadata knows about them
from app.models.user import User                 # noqa: F401
from app.models.audit_event import AuditEvent    # noqa: F401
from app.models.notification import (            # noqa: F401
    Notification, NotificationTarget, NotificationReadStatus, NotificationPreference,
)

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Lab Audit & Notifications",
    description="Activity ledger and role-targeted notifications for the laboratory platform",
    version="0.1.0",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(users.router, prefix="/api/users", tags=["Users"])
app.include_router(audit.router, prefix="/api/audit", tags=["Audit"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["Notifications"])
app.include_router(
    notification_preferences.router,
    prefix="/api/admin/notification-preferences",
    tags=["NotificationPreferences"],
)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Database error"})


@app.on_event("startup")
def on_startup():
    """Create tables in SQLite dev mode and build the process-wide services."""
    if settings.DATABASE_URL.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)

    rules = NotificationRules()
    channel_manager = ChannelManager(
        heartbeat_interval=settings.NOTIFICATION_HEARTBEAT_SECONDS,
        queue_size=settings.NOTIFICATION_CHANNEL_QUEUE_SIZE,
    )
    dispatcher = NotificationDispatcher(channel_manager, default_enabled=settings.NOTIFICATION_DEFAULT_ENABLED)
    app.state.notification_rules = rules
    app.state.channel_manager = channel_manager
    app.state.dispatcher = dispatcher
    app.state.audit_logger = AuditLogger(SessionLocal, dispatcher, rules)
    logger.info("Audit logger and notification dispatcher ready (%d rules)", len(rules))


@app.on_event("shutdown")
def on_shutdown():
    app.state.audit_logger.shutdown()
    app.state.channel_manager.close_all()


@app.get("/api/health")
def health_check(request: Request):
    return {"status": "ok", "liveChannels": request.app.state.channel_manager.channel_count()}
