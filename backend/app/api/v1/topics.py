"""
FastAPI route: topic subscription management.

    POST /api/v1/topics/subscribe
    POST /api/v1/topics/unsubscribe
    POST /api/v1/topics/bulk-subscribe
    POST /api/v1/topics/defaults
    GET  /api/v1/topics/subscriptions/{user_id}
    GET  /api/v1/topics/status?user_id=&topic=
    GET  /api/v1/topics/available
    GET  /api/v1/topics/stats
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_container
from backend.app.api.schemas import (
    BulkSubscribeRequest,
    DefaultTopicsRequest,
    SubscribeRequest,
    UnsubscribeRequest,
)
from backend.app.notifications.container import NotificationContainer
from backend.app.notifications.models import ServiceResult
from backend.app.notifications.topics import predefined_topics, validate_topic

router = APIRouter(prefix="/api/v1/topics", tags=["topics"])


def _render(result: ServiceResult) -> Dict[str, Any]:
    data = result.data
    if hasattr(data, "to_dict"):
        data = data.to_dict()
    return {"success": result.success, "message": result.message, "data": data}


@router.post("/subscribe")
async def subscribe(
    request: SubscribeRequest,
    container: NotificationContainer = Depends(get_container),
) -> Dict[str, Any]:
    result = await container.subscriptions.subscribe(request.user_id, request.topic, request.reason)
    return _render(result)


@router.post("/unsubscribe")
async def unsubscribe(
    request: UnsubscribeRequest,
    container: NotificationContainer = Depends(get_container),
) -> Dict[str, Any]:
    result = await container.subscriptions.unsubscribe(request.user_id, request.topic)
    return _render(result)


@router.post("/bulk-subscribe")
async def bulk_subscribe(
    request: BulkSubscribeRequest,
    container: NotificationContainer = Depends(get_container),
) -> Dict[str, Any]:
    result = await container.subscriptions.bulk_subscribe(request.user_id, request.topics, request.reason)
    return _render(result)


@router.post("/defaults")
async def subscribe_defaults(
    request: DefaultTopicsRequest,
    container: NotificationContainer = Depends(get_container),
) -> Dict[str, Any]:
    result = await container.subscriptions.subscribe_defaults(request.user_id, request.role)
    return _render(result)


@router.get("/subscriptions/{user_id}")
async def user_subscriptions(
    user_id: int,
    container: NotificationContainer = Depends(get_container),
) -> Dict[str, Any]:
    subs = await container.subscriptions.subscriptions_for(user_id)
    return {"user_id": user_id, "count": len(subs), "subscriptions": [s.to_dict() for s in subs]}


@router.get("/status")
async def subscription_status(
    user_id: int = Query(...),
    topic: str = Query(...),
    container: NotificationContainer = Depends(get_container),
) -> Dict[str, Any]:
    validate_topic(topic)
    sub = await container.subscriptions.get(user_id, topic)
    return {
        "user_id": user_id,
        "topic": topic,
        "is_subscribed": bool(sub and sub.is_subscribed),
        "subscription": sub.to_dict() if sub else None,
    }


@router.get("/available")
async def available_topics() -> Dict[str, Any]:
    return {"topics": predefined_topics()}


@router.get("/stats")
async def topic_stats(container: NotificationContainer = Depends(get_container)) -> Dict[str, Any]:
    stats = await container.subscriptions.topic_stats()
    return {"topics": stats, "total_active_subscriptions": sum(stats.values())}
