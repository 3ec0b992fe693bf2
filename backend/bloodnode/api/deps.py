"""Request-scoped dependencies resolved from the objects ``create_app`` wires onto ``app.state``."""

from fastapi import Request

from bloodnode.config import Settings
from bloodnode.services.clock import Clock
from bloodnode.services.notification_service import NotificationTransport


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_clock(request: Request) -> Clock:
    return request.app.state.clock


def get_transport(request: Request) -> NotificationTransport:
    return request.app.state.transport
