"""
db_models.py — ORM tables owned by the notification subsystem.

    topic_subscriptions   unique (user_id, topic), soft-unsubscribe
    delivery_records      one row per recipient × channel attempt,
                          unique (idempotency_key, recipient_user_id, channel)

Users, cases and device endpoints live in other subsystems; only their ids
appear here, without foreign keys.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from backend.app.core.database import Base
from backend.app.notifications.models import (
    AlertPriority,
    ChannelType,
    DeliveryErrorKind,
    DeliveryRecord,
    DeliveryState,
    Subscription,
    utcnow,
)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes, also on backends that drop tzinfo."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class TopicSubscriptionRow(Base):
    __tablename__ = "topic_subscriptions"
    __table_args__ = (
        UniqueConstraint("user_id", "topic", name="uq_topic_subscriptions_user_topic"),
        Index("ix_topic_subscriptions_topic_active", "topic", "is_subscribed"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    topic: Mapped[str] = mapped_column(String(100), nullable=False)
    is_subscribed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    reason: Mapped[Optional[str]] = mapped_column(String(200))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    notification_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_notification_sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    def to_entity(self) -> Subscription:
        return Subscription(
            id=self.id,
            user_id=self.user_id,
            topic=self.topic,
            is_subscribed=self.is_subscribed,
            reason=self.reason,
            created_at=self.created_at,
            updated_at=self.updated_at,
            notification_count=self.notification_count,
            last_notification_sent_at=self.last_notification_sent_at,
        )


class DeliveryRecordRow(Base):
    __tablename__ = "delivery_records"
    __table_args__ = (
        UniqueConstraint(
            "idempotency_key", "recipient_user_id", "channel",
            name="uq_delivery_records_dedupe",
        ),
        Index("ix_delivery_records_state_attempt", "state", "last_attempt_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    recipient_user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    topic: Mapped[Optional[str]] = mapped_column(String(100))
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128), index=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=int(AlertPriority.NORMAL))
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    state: Mapped[str] = mapped_column(String(24), nullable=False, default=DeliveryState.PENDING.value)
    is_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    is_delivered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    is_opened: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    opened_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    error_kind: Mapped[Optional[str]] = mapped_column(String(32))
    error_message: Mapped[Optional[str]] = mapped_column(String(500))
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(200))
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    @classmethod
    def from_entity(cls, record: DeliveryRecord) -> "DeliveryRecordRow":
        return cls(
            event_id=record.event_id,
            recipient_user_id=record.recipient_user_id,
            channel=record.channel.value,
            title=record.title[:200],
            body=record.body,
            category=record.category,
            topic=record.topic,
            idempotency_key=record.idempotency_key,
            priority=int(record.priority),
            data=dict(record.data),
            state=record.state.value,
            is_sent=record.is_sent,
            sent_at=record.sent_at,
            is_delivered=record.is_delivered,
            delivered_at=record.delivered_at,
            is_opened=record.is_opened,
            opened_at=record.opened_at,
            error_kind=record.error_kind.value if record.error_kind else None,
            error_message=record.error_message,
            provider_message_id=record.provider_message_id,
            retry_count=record.retry_count,
            created_at=record.created_at,
            last_attempt_at=record.last_attempt_at,
            expires_at=record.expires_at,
        )

    def to_entity(self) -> DeliveryRecord:
        return DeliveryRecord(
            id=self.id,
            event_id=self.event_id,
            recipient_user_id=self.recipient_user_id,
            channel=ChannelType(self.channel),
            title=self.title,
            body=self.body,
            category=self.category,
            topic=self.topic,
            idempotency_key=self.idempotency_key,
            priority=AlertPriority(self.priority),
            data=dict(self.data or {}),
            state=DeliveryState(self.state),
            is_sent=self.is_sent,
            sent_at=self.sent_at,
            is_delivered=self.is_delivered,
            delivered_at=self.delivered_at,
            is_opened=self.is_opened,
            opened_at=self.opened_at,
            error_kind=DeliveryErrorKind(self.error_kind) if self.error_kind else None,
            error_message=self.error_message,
            provider_message_id=self.provider_message_id,
            retry_count=self.retry_count,
            created_at=self.created_at,
            last_attempt_at=self.last_attempt_at,
            expires_at=self.expires_at,
        )
