"""
FastAPI route: delivery records (notification inbox + receipts).

    GET  /api/v1/deliveries/user/{user_id}     — a user's notifications
    GET  /api/v1/deliveries/stats              — delivery analytics
    GET  /api/v1/deliveries/{id}               — one record
    POST /api/v1/deliveries/{id}/delivered     — provider / client receipt
    POST /api/v1/deliveries/{id}/opened        — user opened the notification
    POST /api/v1/deliveries/{id}/error         — provider failure receipt (also after sent);
                                                 invalid_endpoint deactivates the address
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_container
from backend.app.api.schemas import DeliveryErrorRequest
from backend.app.core.errors import NotFoundError
from backend.app.notifications.container import NotificationContainer
from backend.app.notifications.models import DeliveryErrorKind, DeliveryRecord, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/deliveries", tags=["deliveries"])


async def _load(container: NotificationContainer, record_id: int) -> DeliveryRecord:
    record = await container.records.get(record_id)
    if record is None:
        raise NotFoundError("Delivery record", record_id=record_id)
    return record


@router.get("/user/{user_id}")
async def user_deliveries(
    user_id: int,
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=500),
    container: NotificationContainer = Depends(get_container),
) -> Dict[str, Any]:
    records = await container.records.list_for_user(user_id, unread_only=unread_only, limit=limit)
    return {"user_id": user_id, "count": len(records), "deliveries": [r.to_dict() for r in records]}


@router.get("/stats")
async def delivery_stats(
    since_hours: Optional[int] = Query(None, ge=1, le=24 * 365),
    container: NotificationContainer = Depends(get_container),
) -> Dict[str, Any]:
    since = utcnow() - timedelta(hours=since_hours) if since_hours else None
    return await container.records.stats(since)


@router.get("/{record_id}")
async def get_delivery(
    record_id: int,
    container: NotificationContainer = Depends(get_container),
) -> Dict[str, Any]:
    return (await _load(container, record_id)).to_dict()


@router.post("/{record_id}/delivered")
async def mark_delivered(
    record_id: int,
    container: NotificationContainer = Depends(get_container),
) -> Dict[str, Any]:
    await _load(container, record_id)
    await container.records.mark_delivered(record_id)
    return (await _load(container, record_id)).to_dict()


@router.post("/{record_id}/opened")
async def mark_opened(
    record_id: int,
    container: NotificationContainer = Depends(get_container),
) -> Dict[str, Any]:
    await _load(container, record_id)
    await container.records.mark_opened(record_id)
    return (await _load(container, record_id)).to_dict()


@router.post("/{record_id}/error")
async def mark_error(
    request: DeliveryErrorRequest,
    record_id: int,
    container: NotificationContainer = Depends(get_container),
) -> Dict[str, Any]:
    record = await _load(container, record_id)
    updated = await container.records.record_error_receipt(record_id, request.error_kind, request.error_message)

    deactivated: List[str] = []
    if request.error_kind == DeliveryErrorKind.INVALID_ENDPOINT:
        endpoints = await container.directory.get_active_endpoints(record.recipient_user_id, record.channel)
        for endpoint in endpoints:
            if request.address is not None and endpoint.address != request.address:
                continue
            if await container.directory.deactivate_endpoint(endpoint.endpoint_id):
                deactivated.append(endpoint.endpoint_id)
        if deactivated:
            logger.info(
                "Deactivated %d %s endpoint(s) of user %s after error receipt",
                len(deactivated), record.channel.value, record.recipient_user_id,
                extra={"record_id": record_id, "recipient_id": record.recipient_user_id},
            )

    record = await _load(container, record_id)
    return {"updated": updated, "deactivated_endpoints": deactivated, "record": record.to_dict()}
