"""Request-scoped access to the process-wide services built at startup."""
from fastapi import Request

from app.services.audit_logger import AuditLogger
from app.services.channel_manager import ChannelManager
from app.services.notification_service import NotificationDispatcher


def get_channel_manager(request: Request) -> ChannelManager:
    return request.app.state.channel_manager


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_audit_logger(request: Request) -> AuditLogger:
    return request.app.state.audit_logger
