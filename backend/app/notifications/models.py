"""
models.py — Shared data structures for the alert fanout engine.

Defines:
    • AlertCategory     — built-in case event categories
    • AlertPriority     — low / normal / high / urgent
    • ChannelType       — realtime, push, email, sms
    • DeliveryErrorKind — provider failure taxonomy
    • DeliveryState     — per-record state machine
    • AlertEvent        — immutable dispatcher input
    • Subscription      — (user, topic) subscription row
    • ChannelEndpoint   — a device token / address / socket group
    • DeliveryRecord    — audit row for one recipient × channel attempt
    • DeliveryOutcome   — what a channel adapter returns
    • DispatchPlan      — channels × audience sources
    • FanoutResult      — aggregated dispatch summary

═══════════════════════════════════════════════════════════════════════════
DELIVERY RECORD STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    pending ──► sent                         (provider accepted)
       │
       ├──► failed ──► in_flight ──► sent    (retry scheduler, CAS claim)
       │      ▲            │
       │      └────────────┤                 (transient error, retries left)
       │                   └──► permanently_failed
       │
       ├──► permanently_failed               (InvalidEndpoint / Unknown)
       └──► cancelled                        (dispatch cancelled before start)

Only ``failed`` rows whose error kind is transient (RateLimited,
ProviderUnavailable) are picked up by the retry scheduler.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertCategory(str, Enum):
    """Built-in event categories. The escalation table may add more."""
    URGENT_MISSING       = "urgent_missing"
    SPECIAL_NEEDS_URGENT = "special_needs_urgent"
    MEDICAL_EMERGENCY    = "medical_emergency"
    SIGHTING_REPORT      = "sighting_report"
    CASE_FOUND           = "case_found"
    ROUTINE_UPDATE       = "routine_update"


class AlertPriority(IntEnum):
    """Integer ordering enables comparison."""
    LOW    = 1
    NORMAL = 2
    HIGH   = 3
    URGENT = 4

    @classmethod
    def parse(cls, value: Any) -> "AlertPriority":
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        return cls[str(value).upper()]


class ChannelType(str, Enum):
    """Available delivery channels."""
    REALTIME = "realtime"
    PUSH     = "push"
    EMAIL    = "email"
    SMS      = "sms"


class DeliveryErrorKind(str, Enum):
    """Provider failure taxonomy."""
    INVALID_ENDPOINT     = "invalid_endpoint"      # permanent, deactivate endpoint
    RATE_LIMITED         = "rate_limited"          # transient
    PROVIDER_UNAVAILABLE = "provider_unavailable"  # transient
    UNKNOWN              = "unknown"               # not retried

    @property
    def is_retryable(self) -> bool:
        return self in RETRYABLE_ERRORS


RETRYABLE_ERRORS: FrozenSet[DeliveryErrorKind] = frozenset({
    DeliveryErrorKind.RATE_LIMITED,
    DeliveryErrorKind.PROVIDER_UNAVAILABLE,
})


class DeliveryState(str, Enum):
    PENDING            = "pending"
    IN_FLIGHT          = "in_flight"
    SENT               = "sent"
    FAILED             = "failed"               # transient, retry pending
    PERMANENTLY_FAILED = "permanently_failed"
    CANCELLED          = "cancelled"


class AudienceKind(str, Enum):
    TOPIC    = "topic"
    ROLE     = "role"
    RADIUS   = "radius"
    EXPLICIT = "explicit"
    CONTACTS = "contacts"


class ExplicitMode(str, Enum):
    """How event.explicit_recipients combine with the resolved audience."""
    EXTEND   = "extend"
    OVERRIDE = "override"


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _generate_event_id() -> str:
    return f"EVT-{uuid.uuid4().hex[:12].upper()}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════
# Events & Plans
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AlertEvent:
    """
    Immutable input to the fanout dispatcher.

    Attributes
    ----------
    category : str
        An AlertCategory value or any category present in the escalation table.
    title, body : str
        Channel-neutral message text.
    related_case_id : int | None
        Case this event is about; drives ``case:<id>`` topic audiences.
    explicit_recipients : tuple of int
        User ids addressed directly.
    structured_data : mapping
        Free-form data forwarded to push / realtime payloads.
    latitude, longitude, radius_km : float | None
        Location and search radius for radius audiences.
    """
    category: str
    title: str
    body: str
    priority: AlertPriority = AlertPriority.NORMAL
    related_case_id: Optional[int] = None
    related_user_id: Optional[int] = None
    explicit_recipients: Tuple[int, ...] = ()
    structured_data: Mapping[str, Any] = field(default_factory=dict)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    radius_km: Optional[float] = None
    event_id: str = field(default_factory=_generate_event_id)
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if isinstance(self.category, AlertCategory):
            object.__setattr__(self, "category", self.category.value)
        object.__setattr__(self, "priority", AlertPriority.parse(self.priority))
        object.__setattr__(
            self, "explicit_recipients", tuple(self.explicit_recipients or ()),
        )

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "category": self.category,
            "title": self.title,
            "body": self.body,
            "priority": self.priority.name.lower(),
            "related_case_id": self.related_case_id,
            "related_user_id": self.related_user_id,
            "explicit_recipients": list(self.explicit_recipients),
            "structured_data": dict(self.structured_data),
            "location": (
                {"latitude": self.latitude, "longitude": self.longitude}
                if self.has_location else None
            ),
            "radius_km": self.radius_km,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class AudienceSource:
    """
    One audience term of a dispatch plan.

    ``value`` meaning per kind:
        TOPIC    — topic template, e.g. ``case:{case_id}`` or ``org:all``
        ROLE     — role name, e.g. ``admin``
        CONTACTS — contact list kind, e.g. ``medical``
        RADIUS / EXPLICIT — unused
    """
    kind: AudienceKind
    value: Optional[str] = None

    def describe(self) -> str:
        return f"{self.kind.value}({self.value})" if self.value else self.kind.value


@dataclass(frozen=True)
class DispatchPlan:
    category: str
    channels: FrozenSet[ChannelType]
    audience_sources: Tuple[AudienceSource, ...]
    explicit_mode: ExplicitMode = ExplicitMode.EXTEND

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "channels": sorted(c.value for c in self.channels),
            "audience_sources": [s.describe() for s in self.audience_sources],
            "explicit_mode": self.explicit_mode.value,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Stored entities
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Subscription:
    user_id: int
    topic: str
    is_subscribed: bool = True
    reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    notification_count: int = 0
    last_notification_sent_at: Optional[datetime] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "topic": self.topic,
            "is_subscribed": self.is_subscribed,
            "reason": self.reason,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "notification_count": self.notification_count,
            "last_notification_sent_at": _iso(self.last_notification_sent_at),
        }


@dataclass
class ChannelEndpoint:
    """A deliverable address for one user on one channel."""
    endpoint_id: str
    user_id: int
    channel: ChannelType
    address: str
    platform: Optional[str] = None     # ios / android / web
    is_active: bool = True
    last_seen_at: Optional[datetime] = None


@dataclass
class DeliveryRecord:
    recipient_user_id: int
    channel: ChannelType
    title: str
    body: str
    category: str
    event_id: str = ""
    topic: Optional[str] = None
    idempotency_key: Optional[str] = None
    priority: AlertPriority = AlertPriority.NORMAL
    data: Dict[str, Any] = field(default_factory=dict)
    state: DeliveryState = DeliveryState.PENDING
    is_sent: bool = False
    sent_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    is_opened: bool = False
    opened_at: Optional[datetime] = None
    error_kind: Optional[DeliveryErrorKind] = None
    error_message: Optional[str] = None
    provider_message_id: Optional[str] = None
    retry_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    last_attempt_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def dedupe_key(self) -> Optional[Tuple[str, int, str]]:
        if not self.idempotency_key:
            return None
        return (self.idempotency_key, self.recipient_user_id, self.channel.value)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "recipient_user_id": self.recipient_user_id,
            "channel": self.channel.value,
            "title": self.title,
            "body": self.body,
            "category": self.category,
            "topic": self.topic,
            "idempotency_key": self.idempotency_key,
            "priority": self.priority.name.lower(),
            "state": self.state.value,
            "is_sent": self.is_sent,
            "sent_at": _iso(self.sent_at),
            "is_delivered": self.is_delivered,
            "delivered_at": _iso(self.delivered_at),
            "is_opened": self.is_opened,
            "opened_at": _iso(self.opened_at),
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
            "provider_message_id": self.provider_message_id,
            "retry_count": self.retry_count,
            "created_at": _iso(self.created_at),
            "last_attempt_at": _iso(self.last_attempt_at),
            "expires_at": _iso(self.expires_at),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Delivery results
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DeliveryPayload:
    """Channel-neutral message handed to adapters."""
    title: str
    body: str
    category: str
    priority: AlertPriority = AlertPriority.NORMAL
    data: Mapping[str, Any] = field(default_factory=dict)
    event_id: str = ""

    @classmethod
    def from_event(cls, event: AlertEvent) -> "DeliveryPayload":
        data = dict(event.structured_data)
        if event.related_case_id is not None:
            data.setdefault("case_id", event.related_case_id)
        return cls(
            title=event.title,
            body=event.body,
            category=event.category,
            priority=event.priority,
            data=data,
            event_id=event.event_id,
        )

    @classmethod
    def from_record(cls, record: DeliveryRecord) -> "DeliveryPayload":
        return cls(
            title=record.title,
            body=record.body,
            category=record.category,
            priority=record.priority,
            data=dict(record.data),
            event_id=record.event_id,
        )


@dataclass(frozen=True)
class DeliveryOutcome:
    success: bool
    provider_message_id: Optional[str] = None
    error_kind: Optional[DeliveryErrorKind] = None
    error_message: Optional[str] = None

    @classmethod
    def ok(cls, provider_message_id: Optional[str] = None) -> "DeliveryOutcome":
        return cls(success=True, provider_message_id=provider_message_id)

    @classmethod
    def failed(cls, kind: DeliveryErrorKind, message: str = "") -> "DeliveryOutcome":
        return cls(success=False, error_kind=kind, error_message=message or kind.value)

    @property
    def is_retryable(self) -> bool:
        return self.error_kind is not None and self.error_kind.is_retryable


@dataclass
class RecipientOutcome:
    """Outcome of one (recipient, channel) work item."""
    recipient_user_id: int
    channel: ChannelType
    state: DeliveryState
    record_id: Optional[int] = None
    error_kind: Optional[DeliveryErrorKind] = None
    error_message: Optional[str] = None
    provider_message_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state == DeliveryState.SENT

    @classmethod
    def from_record(cls, record: DeliveryRecord) -> "RecipientOutcome":
        return cls(
            recipient_user_id=record.recipient_user_id,
            channel=record.channel,
            state=record.state,
            record_id=record.id,
            error_kind=record.error_kind,
            error_message=record.error_message,
            provider_message_id=record.provider_message_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_user_id": self.recipient_user_id,
            "channel": self.channel.value,
            "state": self.state.value,
            "record_id": self.record_id,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
        }


@dataclass
class ChannelCounts:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped_no_endpoint: int = 0
    cancelled: int = 0
    errors: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped_no_endpoint": self.skipped_no_endpoint,
            "cancelled": self.cancelled,
            "errors": dict(self.errors),
        }


@dataclass
class FanoutResult:
    """Final summary for one dispatch call. Never raised, always returned."""
    event_id: str
    category: str
    idempotency_key: Optional[str] = None
    plan: Optional[DispatchPlan] = None
    total_recipients: int = 0
    per_channel_counts: Dict[ChannelType, ChannelCounts] = field(default_factory=dict)
    recipient_outcomes: List[RecipientOutcome] = field(default_factory=list)
    replayed: bool = False
    cancelled: bool = False
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def counts_for(self, channel: ChannelType) -> ChannelCounts:
        return self.per_channel_counts.setdefault(channel, ChannelCounts())

    @property
    def total_succeeded(self) -> int:
        return sum(c.succeeded for c in self.per_channel_counts.values())

    @property
    def total_failed(self) -> int:
        return sum(c.failed for c in self.per_channel_counts.values())

    def tally(self, outcome: RecipientOutcome) -> None:
        counts = self.counts_for(outcome.channel)
        if outcome.state == DeliveryState.CANCELLED:
            counts.cancelled += 1
            return
        counts.attempted += 1
        if outcome.succeeded:
            counts.succeeded += 1
        elif outcome.state in (DeliveryState.PENDING, DeliveryState.IN_FLIGHT):
            # replayed while another attempt is still running
            return
        else:
            counts.failed += 1
            kind = outcome.error_kind.value if outcome.error_kind else "unknown"
            counts.errors[kind] = counts.errors.get(kind, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "category": self.category,
            "idempotency_key": self.idempotency_key,
            "plan": self.plan.to_dict() if self.plan else None,
            "total_recipients": self.total_recipients,
            "total_succeeded": self.total_succeeded,
            "total_failed": self.total_failed,
            "replayed": self.replayed,
            "cancelled": self.cancelled,
            "per_channel_counts": {
                ch.value: counts.to_dict()
                for ch, counts in sorted(
                    self.per_channel_counts.items(), key=lambda kv: kv[0].value,
                )
            },
            "recipient_outcomes": [o.to_dict() for o in self.recipient_outcomes],
            "started_at": self.started_at.isoformat(),
            "completed_at": _iso(self.completed_at),
        }


@dataclass
class ServiceResult:
    """Operation result wrapper for store writes."""
    success: bool
    message: str = ""
    data: Any = None

    @classmethod
    def ok(cls, message: str = "Operation completed successfully", data: Any = None) -> "ServiceResult":
        return cls(True, message, data)

    @classmethod
    def fail(cls, message: str = "Operation failed") -> "ServiceResult":
        return cls(False, message)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message, "data": self.data}
