"""
FastAPI route: alert fanout endpoints.

Provides endpoints to:
    POST /api/v1/alerts/dispatch              — fan an event out, wait for the result
    POST /api/v1/alerts/dispatch/async        — fan out in the background
    GET  /api/v1/alerts/dispatch/{event_id}   — result of a dispatch
    POST /api/v1/alerts/dispatch/{event_id}/cancel — stop a background dispatch
    POST /api/v1/alerts/plan                  — preview plan + audience size
    GET  /api/v1/alerts/categories            — escalation table
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from backend.app.api.deps import get_container
from backend.app.api.schemas import AlertEventInput, DispatchAccepted, DispatchRequest
from backend.app.core.errors import NotFoundError
from backend.app.notifications.container import NotificationContainer

router = APIRouter(prefix="/api/v1/alerts", tags=["alert-fanout"])


@router.post(
    "/dispatch",
    summary="Dispatch an alert event",
    description=(
        "Resolves the escalation plan and audience for the event, delivers "
        "through every planned channel and returns per-channel counts. "
        "Repeating an idempotency key replays the stored outcome."
    ),
)
async def dispatch(
    request: DispatchRequest,
    container: NotificationContainer = Depends(get_container),
) -> Dict[str, Any]:
    result = await container.dispatcher.dispatch(request.event.to_event(), request.idempotency_key)
    return result.to_dict()


@router.post("/dispatch/async", status_code=202, response_model=DispatchAccepted)
async def dispatch_async(
    request: DispatchRequest,
    container: NotificationContainer = Depends(get_container),
) -> DispatchAccepted:
    """Fire-and-forget dispatch; poll GET /dispatch/{event_id}."""
    event = request.event.to_event()
    # Unknown categories fail here instead of inside the background task
    container.policy.plan(event.category, event)
    event_id = container.dispatcher.dispatch_in_background(event, request.idempotency_key)
    return DispatchAccepted(event_id=event_id)


@router.get("/dispatch/{event_id}")
async def get_dispatch(
    event_id: str,
    container: NotificationContainer = Depends(get_container),
):
    result = container.dispatcher.get_result(event_id)
    if result is not None:
        return result.to_dict()
    if container.dispatcher.is_running(event_id):
        return JSONResponse(status_code=202, content={"event_id": event_id, "status": "running"})
    raise NotFoundError("Dispatch", event_id=event_id)


@router.post("/dispatch/{event_id}/cancel")
async def cancel_dispatch(
    event_id: str,
    container: NotificationContainer = Depends(get_container),
) -> Dict[str, Any]:
    if not container.dispatcher.cancel(event_id):
        raise NotFoundError("Running dispatch", event_id=event_id)
    return {"event_id": event_id, "status": "cancelling"}


@router.post("/plan", summary="Preview the dispatch plan for an event")
async def preview_plan(
    event_input: AlertEventInput,
    container: NotificationContainer = Depends(get_container),
) -> Dict[str, Any]:
    event = event_input.to_event()
    plan = container.policy.plan(event.category, event)
    audience = await container.resolver.resolve_plan(plan, event)
    return {
        "plan": plan.to_dict(),
        "total_recipients": len(audience),
        "source_counts": audience.source_counts,
        "failed_sources": audience.failed_sources,
    }


@router.get("/categories")
async def list_categories(container: NotificationContainer = Depends(get_container)) -> Dict[str, Any]:
    return {"categories": container.policy.to_dict()}
