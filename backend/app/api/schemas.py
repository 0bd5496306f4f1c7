"""
Pydantic schemas for the alert fanout API.

Separated from the route handlers so they are reusable across
the codebase (websocket handlers, background workers, tests).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from backend.app.notifications.models import AlertEvent, AlertPriority, ChannelType, DeliveryErrorKind


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

class AlertEventInput(BaseModel):
    """Case event to fan out. Mirrors ``AlertEvent``."""
    category: str = Field(..., examples=["urgent_missing"])
    title: str = Field(..., min_length=1, max_length=200, examples=["Missing Person Alert - Jane Doe"])
    body: str = Field(..., min_length=1, max_length=4000)
    priority: str = Field("normal", examples=["urgent"], description="low / normal / high / urgent")
    related_case_id: Optional[int] = Field(None, examples=[100])
    related_user_id: Optional[int] = None
    explicit_recipients: List[int] = Field(default_factory=list)
    structured_data: Dict[str, Any] = Field(default_factory=dict)
    latitude: Optional[float] = Field(None, ge=-90.0, le=90.0, examples=[29.7604])
    longitude: Optional[float] = Field(None, ge=-180.0, le=180.0, examples=[-95.3698])
    radius_km: Optional[float] = Field(None, gt=0.0, le=500.0)

    @field_validator("priority")
    @classmethod
    def _known_priority(cls, v: str) -> str:
        if v.upper() not in AlertPriority.__members__:
            raise ValueError(f"priority must be one of {[p.name.lower() for p in AlertPriority]}")
        return v.lower()

    def to_event(self) -> AlertEvent:
        return AlertEvent(
            category=self.category,
            title=self.title,
            body=self.body,
            priority=AlertPriority.parse(self.priority),
            related_case_id=self.related_case_id,
            related_user_id=self.related_user_id,
            explicit_recipients=tuple(self.explicit_recipients),
            structured_data=self.structured_data,
            latitude=self.latitude,
            longitude=self.longitude,
            radius_km=self.radius_km,
        )


class DispatchRequest(BaseModel):
    event: AlertEventInput
    idempotency_key: Optional[str] = Field(None, max_length=128, examples=["case-100-missing"])


class DispatchAccepted(BaseModel):
    event_id: str
    status: str = "accepted"


# ---------------------------------------------------------------------------
# Topics
# ---------------------------------------------------------------------------

class SubscribeRequest(BaseModel):
    user_id: int = Field(..., examples=[7])
    topic: str = Field(..., examples=["case:100"])
    reason: Optional[str] = Field(None, max_length=200)


class UnsubscribeRequest(BaseModel):
    user_id: int
    topic: str


class BulkSubscribeRequest(BaseModel):
    user_id: int
    topics: List[str] = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=200)


class DefaultTopicsRequest(BaseModel):
    user_id: int
    role: str = Field(..., examples=["parent"])


# ---------------------------------------------------------------------------
# Deliveries
# ---------------------------------------------------------------------------

class DeliveryErrorRequest(BaseModel):
    """Provider receipt reporting a failed delivery."""
    error_kind: DeliveryErrorKind = DeliveryErrorKind.UNKNOWN
    error_message: Optional[str] = Field(None, max_length=500)
    address: Optional[str] = Field(
        None, max_length=500, examples=["fcm-token-abc"],
        description="Rejected address; an invalid_endpoint receipt deactivates it (all of the channel when omitted)",
    )


# ---------------------------------------------------------------------------
# Devices & users
# ---------------------------------------------------------------------------

class DeviceRegistrationRequest(BaseModel):
    """Register or refresh one delivery address (push token, email, phone)."""
    user_id: int = Field(..., examples=[7])
    channel: ChannelType = ChannelType.PUSH
    address: str = Field(..., min_length=1, max_length=500, examples=["fcm-token-abc"])
    platform: Optional[str] = Field(None, max_length=20, examples=["ios"])


class UserProfileRequest(BaseModel):
    """Role, last known location and preferred alert radius of a user."""
    role: Optional[str] = Field(None, max_length=50, examples=["parent"])
    latitude: Optional[float] = Field(None, ge=-90.0, le=90.0, examples=[29.7604])
    longitude: Optional[float] = Field(None, ge=-180.0, le=180.0, examples=[-95.3698])
    alert_radius_km: Optional[float] = Field(None, gt=0.0, le=500.0)

    @model_validator(mode="after")
    def _location_is_complete(self) -> "UserProfileRequest":
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be given together")
        return self
