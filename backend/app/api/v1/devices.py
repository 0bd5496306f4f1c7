"""
FastAPI route: device endpoints and user profiles in the directory.

    POST   /api/v1/devices/register                 — register / refresh an address
    DELETE /api/v1/devices/unregister?user_id=&platform=&channel=
    POST   /api/v1/devices/heartbeat?user_id=&platform=&channel=
    GET    /api/v1/devices/user/{user_id}           — a user's active endpoints
    GET    /api/v1/devices/stats                    — endpoint counts
    PUT    /api/v1/devices/users/{user_id}          — role, location, alert radius

Registering the first device also subscribes the user to the default
topics of their role.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_container
from backend.app.api.schemas import DeviceRegistrationRequest, UserProfileRequest
from backend.app.core.errors import FanoutAPIError, NotFoundError
from backend.app.notifications.container import NotificationContainer
from backend.app.notifications.directory import InMemoryUserDirectory
from backend.app.notifications.models import ChannelEndpoint, ChannelType, utcnow
from backend.app.spatial.radius_utils import Coordinate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/devices", tags=["devices"])


def get_directory(container: NotificationContainer = Depends(get_container)) -> InMemoryUserDirectory:
    directory = container.directory
    if not isinstance(directory, InMemoryUserDirectory):
        raise FanoutAPIError(
            "The configured user directory is read-only",
            status_code=501,
            error_code="DIRECTORY_READ_ONLY",
        )
    return directory


def _endpoint_dict(endpoint: ChannelEndpoint) -> Dict[str, Any]:
    return {
        "endpoint_id": endpoint.endpoint_id,
        "user_id": endpoint.user_id,
        "channel": endpoint.channel.value,
        "address": endpoint.address,
        "platform": endpoint.platform,
        "is_active": endpoint.is_active,
        "last_seen_at": endpoint.last_seen_at.isoformat() if endpoint.last_seen_at else None,
    }


@router.post("/register")
async def register_device(
    request: DeviceRegistrationRequest,
    container: NotificationContainer = Depends(get_container),
    directory: InMemoryUserDirectory = Depends(get_directory),
) -> Dict[str, Any]:
    first_device = not directory.endpoints_for(request.user_id, include_inactive=True)
    endpoint = directory.register_endpoint(
        request.user_id, request.channel, request.address, platform=request.platform,
    )

    topics = []
    if first_device:
        role = directory.get_role(request.user_id) or "user"
        result = await container.subscriptions.subscribe_defaults(request.user_id, role)
        topics = result.data or []

    logger.info(
        "Device registered for user %s on %s (%s)",
        request.user_id, request.channel.value, request.platform or "default",
        extra={"recipient_id": request.user_id, "channel": request.channel.value},
    )
    return {
        "success": True,
        "message": "Device registered successfully",
        "endpoint": _endpoint_dict(endpoint),
        "subscribed_topics": topics,
        "timestamp": utcnow().isoformat(),
    }


@router.delete("/unregister")
async def unregister_device(
    user_id: int = Query(...),
    platform: Optional[str] = Query(None),
    channel: ChannelType = Query(ChannelType.PUSH),
    directory: InMemoryUserDirectory = Depends(get_directory),
) -> Dict[str, Any]:
    endpoint = directory.find_endpoint(user_id, channel, platform)
    if endpoint is None:
        raise NotFoundError("Device", user_id=user_id, channel=channel.value, platform=platform)
    await directory.deactivate_endpoint(endpoint.endpoint_id)
    return {"success": True, "message": "Device unregistered successfully", "endpoint": _endpoint_dict(endpoint)}


@router.post("/heartbeat")
async def device_heartbeat(
    user_id: int = Query(...),
    platform: Optional[str] = Query(None),
    channel: ChannelType = Query(ChannelType.PUSH),
    directory: InMemoryUserDirectory = Depends(get_directory),
) -> Dict[str, Any]:
    endpoint = directory.touch_endpoint(user_id, channel, platform)
    if endpoint is None:
        raise NotFoundError("Active device", user_id=user_id, channel=channel.value, platform=platform)
    return {"success": True, "last_seen_at": endpoint.last_seen_at.isoformat()}


@router.get("/user/{user_id}")
async def user_devices(
    user_id: int,
    include_inactive: bool = Query(False),
    directory: InMemoryUserDirectory = Depends(get_directory),
) -> Dict[str, Any]:
    endpoints = directory.endpoints_for(user_id, include_inactive=include_inactive)
    return {"user_id": user_id, "count": len(endpoints), "devices": [_endpoint_dict(e) for e in endpoints]}


@router.get("/stats")
async def device_stats(directory: InMemoryUserDirectory = Depends(get_directory)) -> Dict[str, Any]:
    return {"success": True, "stats": directory.endpoint_stats()}


@router.put("/users/{user_id}")
async def update_user(
    user_id: int,
    request: UserProfileRequest,
    directory: InMemoryUserDirectory = Depends(get_directory),
) -> Dict[str, Any]:
    role = request.role or directory.get_role(user_id) or "user"
    location = (
        Coordinate(request.latitude, request.longitude)
        if request.latitude is not None and request.longitude is not None else None
    )
    directory.add_user(user_id, role, location=location, alert_radius_km=request.alert_radius_km)

    location = await directory.get_user_location(user_id)
    return {
        "user_id": user_id,
        "role": directory.get_role(user_id),
        "location": {"latitude": location.latitude, "longitude": location.longitude} if location else None,
        "alert_radius_km": await directory.get_alert_radius_km(user_id),
    }
