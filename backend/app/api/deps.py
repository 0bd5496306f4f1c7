"""
FastAPI dependencies shared by the v1 routers.
"""

from __future__ import annotations

from fastapi import Request

from backend.app.notifications.container import NotificationContainer


def get_container(request: Request) -> NotificationContainer:
    """The container built by the application lifespan."""
    return request.app.state.container
