"""Pytest fixtures — file-backed SQLite database, rebuilt for every test."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from app.database import Base, get_db
from app.dependencies import get_audit_logger, get_channel_manager, get_dispatcher
from app.main import app
from app.services.audit_logger import AuditLogger
from app.services.channel_manager import ChannelManager
from app.services.notification_service import NotificationDispatcher

# Import all models so they register with Base.metadata
from app.models.user import User                    # noqa: F401
from app.models.audit_event import AuditEvent       # noqa: F401
from app.models.notification import (               # noqa: F401
    Notification, NotificationTarget, NotificationReadStatus, NotificationPreference,
)

SQLITE_URL = "sqlite:///./test.db"


@pytest.fixture(scope="function")
def db_engine():
    """Create a fresh SQLite engine for each test."""
    engine = create_engine(SQLITE_URL, connect_args={"check_same_thread": False})

    # Enable WAL mode so the dispatch worker can write while a request session is open
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db(session_factory):
    """Yield a database session bound to the test engine."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def channel_manager():
    return ChannelManager(heartbeat_interval=0.05, queue_size=10)


@pytest.fixture(scope="function")
def dispatcher(channel_manager):
    return NotificationDispatcher(channel_manager)


@pytest.fixture(scope="function")
def audit_logger(session_factory, dispatcher):
    logger = AuditLogger(session_factory, dispatcher)
    yield logger
    logger.shutdown()


@pytest.fixture(scope="function")
def client(session_factory, channel_manager, dispatcher, audit_logger):
    """FastAPI TestClient wired to the test database and per-test services."""

    def _override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_channel_manager] = lambda: channel_manager
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_audit_logger] = lambda: audit_logger
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def auth_headers(user_id: str, role: str = "STUDENT", name: str = None, email: str = None) -> dict:
    """Identity headers as forwarded by the gateway."""
    headers = {"X-User-Id": user_id, "X-User-Role": role}
    if name:
        headers["X-User-Name"] = name
    if email:
        headers["X-User-Email"] = email
    return headers


ADMIN_HEADERS = auth_headers("admin-1", "ADMIN", name="Ada Admin")


def create_test_user(
    client: TestClient, name: str = "Test User", role: str = "STUDENT", email: str = None, user_id: str = None,
) -> dict:
    """Helper — POST /api/users as an admin and return response JSON."""
    body = {"name": name, "role": role, "email": email or f"{name.lower().replace(' ', '.')}@lab.test"}
    if user_id:
        body["user_id"] = user_id
    resp = client.post("/api/users/", json=body, headers=ADMIN_HEADERS)
    assert resp.status_code == 201, resp.text
    return resp.json()
