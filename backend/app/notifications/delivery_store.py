"""
delivery_store.py — Durable audit log of notification attempts.

One ``DeliveryRecord`` per recipient × channel. The store is used for:
    • idempotency      — unique (idempotency_key, recipient, channel)
    • retry accounting — find_retryable + compare-and-set claim, reaping
                         of in_flight rows abandoned by a dead worker
    • analytics        — delivered / opened tracking, stats

Records whose ``expires_at`` has passed are read-only: mark_* raise
``RecordExpiredError`` and ``claim_for_retry`` returns None.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.config import settings
from backend.app.core.errors import RecordExpiredError
from backend.app.notifications.db_models import DeliveryRecordRow
from backend.app.notifications.models import (
    RETRYABLE_ERRORS,
    AlertCategory,
    DeliveryErrorKind,
    DeliveryRecord,
    DeliveryState,
    utcnow,
)

logger = logging.getLogger(__name__)

Changes = Dict[str, Any]


def default_expiry(created_at: Optional[datetime] = None) -> Optional[datetime]:
    """expires_at for a new record, from DELIVERY_RECORD_TTL_HOURS (0 = never)."""
    if settings.DELIVERY_RECORD_TTL_HOURS <= 0:
        return None
    return (created_at or utcnow()) + timedelta(hours=settings.DELIVERY_RECORD_TTL_HOURS)


class DeliveryRecordStore(ABC):
    """Contract + state-transition rules shared by both backends."""

    # ── Backend primitives ──

    @abstractmethod
    async def create(self, record: DeliveryRecord) -> int:
        """Insert unconditionally. Returns the new id."""

    @abstractmethod
    async def create_if_absent(self, record: DeliveryRecord) -> Tuple[DeliveryRecord, bool]:
        """
        Insert unless a record with the same dedupe key exists.

        Returns
        -------
        (record, created)
            The stored record (new or pre-existing) and whether it was
            created by this call.
        """

    @abstractmethod
    async def get(self, record_id: int) -> Optional[DeliveryRecord]:
        ...

    @abstractmethod
    async def find_by_idempotency_key(self, key: str) -> List[DeliveryRecord]:
        ...

    @abstractmethod
    async def _apply(
        self, record_id: int, changes: Changes, expected: Optional[Tuple[DeliveryState, ...]] = None,
    ) -> bool:
        """Apply ``changes`` if the record exists (and its state is in ``expected``)."""

    @abstractmethod
    async def claim_for_retry(self, record_id: int) -> Optional[DeliveryRecord]:
        """CAS failed → in_flight, retry_count += 1. None if lost or expired."""

    @abstractmethod
    async def find_retryable(
        self, older_than: datetime, max_retry: int, limit: Optional[int] = None,
    ) -> List[DeliveryRecord]:
        ...

    @abstractmethod
    async def _find_stale_in_flight(self, older_than: datetime) -> List[DeliveryRecord]:
        """Unexpired ``in_flight`` records last attempted before ``older_than``."""

    @abstractmethod
    async def list_for_user(
        self, user_id: int, unread_only: bool = False, limit: int = 50,
    ) -> List[DeliveryRecord]:
        ...

    @abstractmethod
    async def _all_since(self, since: Optional[datetime]) -> List[DeliveryRecord]:
        ...

    # ── State transitions ──

    async def mark_sent(self, record_id: int, provider_message_id: Optional[str] = None) -> bool:
        now = utcnow()
        return await self._apply(record_id, {
            "state": DeliveryState.SENT,
            "is_sent": True,
            "sent_at": now,
            "last_attempt_at": now,
            "provider_message_id": provider_message_id,
            "error_kind": None,
            "error_message": None,
        }, expected=(DeliveryState.PENDING, DeliveryState.IN_FLIGHT, DeliveryState.FAILED))

    async def mark_in_flight(self, record_id: int) -> bool:
        return await self._apply(
            record_id,
            {"state": DeliveryState.IN_FLIGHT, "last_attempt_at": utcnow()},
            expected=(DeliveryState.PENDING,),
        )

    async def mark_errored(
        self,
        record_id: int,
        error_kind: DeliveryErrorKind,
        error_message: Optional[str] = None,
        *,
        permanent: Optional[bool] = None,
    ) -> bool:
        """
        Record a failed attempt.

        ``permanent`` defaults to "error kind is not retryable"; pass True
        to close out a record whose retry budget is spent.
        """
        if permanent is None:
            permanent = error_kind not in RETRYABLE_ERRORS
        state = DeliveryState.PERMANENTLY_FAILED if permanent else DeliveryState.FAILED
        return await self._apply(record_id, {
            "state": state,
            "is_sent": False,
            "error_kind": error_kind,
            "error_message": (error_message or error_kind.value)[:500],
            "last_attempt_at": utcnow(),
        }, expected=(DeliveryState.PENDING, DeliveryState.IN_FLIGHT, DeliveryState.FAILED))

    async def record_error_receipt(
        self,
        record_id: int,
        error_kind: DeliveryErrorKind,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Apply a provider error callback (bounce, revoked token, ...).

        Unlike ``mark_errored`` this also reopens ``sent`` records: a
        provider may accept a message and report it undeliverable later.
        """
        permanent = error_kind not in RETRYABLE_ERRORS
        return await self._apply(record_id, {
            "state": DeliveryState.PERMANENTLY_FAILED if permanent else DeliveryState.FAILED,
            "is_sent": False,
            "error_kind": error_kind,
            "error_message": (error_message or error_kind.value)[:500],
            "last_attempt_at": utcnow(),
        }, expected=(DeliveryState.PENDING, DeliveryState.IN_FLIGHT, DeliveryState.FAILED, DeliveryState.SENT))

    async def reap_stale_in_flight(self, older_than: datetime, max_retry: int) -> Dict[str, int]:
        """
        Close out ``in_flight`` records whose attempt started before ``older_than``.

        The worker that claimed them is gone, so the outcome is unknown:
        records with retry budget left go back to ``failed`` for the retry
        sweep, the rest become ``permanently_failed``.
        """
        summary = {"requeued": 0, "permanently_failed": 0}
        for record in await self._find_stale_in_flight(older_than):
            permanent = record.retry_count >= max_retry
            reaped = await self.mark_errored(
                record.id, DeliveryErrorKind.PROVIDER_UNAVAILABLE,
                "Attempt abandoned while in flight", permanent=permanent,
            )
            if reaped:
                summary["permanently_failed" if permanent else "requeued"] += 1
        if any(summary.values()):
            logger.warning(
                "Reaped stale in-flight records: %d requeued, %d permanently failed",
                summary["requeued"], summary["permanently_failed"],
            )
        return summary

    async def mark_permanently_failed(self, record_id: int, error_message: Optional[str] = None) -> bool:
        changes: Changes = {"state": DeliveryState.PERMANENTLY_FAILED}
        if error_message:
            changes["error_message"] = error_message[:500]
        return await self._apply(
            record_id, changes,
            expected=(DeliveryState.PENDING, DeliveryState.IN_FLIGHT, DeliveryState.FAILED),
        )

    async def mark_cancelled(self, record_id: int) -> bool:
        return await self._apply(
            record_id, {"state": DeliveryState.CANCELLED}, expected=(DeliveryState.PENDING,),
        )

    async def mark_delivered(self, record_id: int) -> bool:
        return await self._apply(record_id, {"is_delivered": True, "delivered_at": utcnow()})

    async def mark_opened(self, record_id: int) -> bool:
        """Opening implies delivery."""
        record = await self.get(record_id)
        if record is None:
            return False
        now = utcnow()
        changes: Changes = {"is_opened": True, "opened_at": now}
        if not record.is_delivered:
            changes.update(is_delivered=True, delivered_at=now)
        return await self._apply(record_id, changes)

    # ── Analytics ──

    async def active_case_ids(self, since: Optional[datetime] = None) -> List[int]:
        """Cases alerted on since ``since`` and not reported found in that window."""
        alerted, found = set(), set()
        for r in await self._all_since(since):
            case_id = r.data.get("case_id")
            if case_id is None:
                continue
            (found if r.category == AlertCategory.CASE_FOUND.value else alerted).add(int(case_id))
        return sorted(alerted - found)

    async def stats(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        records = await self._all_since(since)
        by_state: Dict[str, int] = {}
        by_channel: Dict[str, int] = {}
        by_error: Dict[str, int] = {}
        for r in records:
            by_state[r.state.value] = by_state.get(r.state.value, 0) + 1
            by_channel[r.channel.value] = by_channel.get(r.channel.value, 0) + 1
            if r.error_kind is not None:
                by_error[r.error_kind.value] = by_error.get(r.error_kind.value, 0) + 1

        total = len(records)
        sent = sum(1 for r in records if r.is_sent)
        delivered = sum(1 for r in records if r.is_delivered)
        opened = sum(1 for r in records if r.is_opened)
        return {
            "total": total,
            "sent": sent,
            "delivered": delivered,
            "opened": opened,
            "by_state": by_state,
            "by_channel": by_channel,
            "by_error_kind": by_error,
            "delivery_rate": round(delivered / sent, 4) if sent else 0.0,
            "open_rate": round(opened / delivered, 4) if delivered else 0.0,
        }


# ═══════════════════════════════════════════════════════════════════════════
# In-memory backend
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryDeliveryRecordStore(DeliveryRecordStore):

    def __init__(self) -> None:
        self._records: Dict[int, DeliveryRecord] = {}
        self._dedupe: Dict[Tuple[str, int, str], int] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    def _insert(self, record: DeliveryRecord) -> int:
        record.id = next(self._ids)
        self._records[record.id] = record
        if record.dedupe_key is not None:
            self._dedupe[record.dedupe_key] = record.id
        return record.id

    async def create(self, record: DeliveryRecord) -> int:
        async with self._lock:
            if record.dedupe_key is not None and record.dedupe_key in self._dedupe:
                raise ValueError(f"Duplicate delivery record for {record.dedupe_key}")
            return self._insert(record)

    async def create_if_absent(self, record: DeliveryRecord) -> Tuple[DeliveryRecord, bool]:
        async with self._lock:
            key = record.dedupe_key
            if key is not None and key in self._dedupe:
                return self._records[self._dedupe[key]], False
            self._insert(record)
            return record, True

    async def get(self, record_id: int) -> Optional[DeliveryRecord]:
        return self._records.get(record_id)

    async def find_by_idempotency_key(self, key: str) -> List[DeliveryRecord]:
        return sorted(
            (r for r in self._records.values() if r.idempotency_key == key),
            key=lambda r: r.id or 0,
        )

    async def _apply(
        self, record_id: int, changes: Changes, expected: Optional[Tuple[DeliveryState, ...]] = None,
    ) -> bool:
        async with self._lock:
            record = self._records.get(record_id)
            if record is None:
                return False
            if record.is_expired():
                raise RecordExpiredError(record_id)
            if expected is not None and record.state not in expected:
                return False
            for name, value in changes.items():
                setattr(record, name, value)
            return True

    async def claim_for_retry(self, record_id: int) -> Optional[DeliveryRecord]:
        async with self._lock:
            record = self._records.get(record_id)
            if record is None or record.is_expired() or record.state != DeliveryState.FAILED:
                return None
            record.state = DeliveryState.IN_FLIGHT
            record.retry_count += 1
            record.last_attempt_at = utcnow()
            return record

    async def find_retryable(
        self, older_than: datetime, max_retry: int, limit: Optional[int] = None,
    ) -> List[DeliveryRecord]:
        now = utcnow()
        found = [
            r for r in self._records.values()
            if r.state == DeliveryState.FAILED
            and r.error_kind in RETRYABLE_ERRORS
            and r.retry_count < max_retry
            and (r.last_attempt_at or r.created_at) <= older_than
            and not r.is_expired(now)
        ]
        found.sort(key=lambda r: r.last_attempt_at or r.created_at)
        return found[:limit] if limit else found

    async def _find_stale_in_flight(self, older_than: datetime) -> List[DeliveryRecord]:
        now = utcnow()
        return [
            r for r in self._records.values()
            if r.state == DeliveryState.IN_FLIGHT
            and (r.last_attempt_at or r.created_at) <= older_than
            and not r.is_expired(now)
        ]

    async def list_for_user(
        self, user_id: int, unread_only: bool = False, limit: int = 50,
    ) -> List[DeliveryRecord]:
        rows = [
            r for r in self._records.values()
            if r.recipient_user_id == user_id and (not unread_only or not r.is_opened)
        ]
        rows.sort(key=lambda r: (r.created_at, r.id or 0), reverse=True)
        return rows[:limit]

    async def _all_since(self, since: Optional[datetime]) -> List[DeliveryRecord]:
        return [r for r in self._records.values() if since is None or r.created_at >= since]


# ═══════════════════════════════════════════════════════════════════════════
# SQLAlchemy backend
# ═══════════════════════════════════════════════════════════════════════════

def _column_value(value: Any) -> Any:
    if isinstance(value, (DeliveryState, DeliveryErrorKind)):
        return value.value
    return value


class SqlDeliveryRecordStore(DeliveryRecordStore):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def create(self, record: DeliveryRecord) -> int:
        async with self._sessions() as session:
            row = DeliveryRecordRow.from_entity(record)
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ValueError(f"Duplicate delivery record for {record.dedupe_key}") from e
            record.id = row.id
            return row.id

    async def create_if_absent(self, record: DeliveryRecord) -> Tuple[DeliveryRecord, bool]:
        async with self._sessions() as session:
            row = DeliveryRecordRow.from_entity(record)
            session.add(row)
            try:
                await session.commit()
                record.id = row.id
                return record, True
            except IntegrityError:
                await session.rollback()
            existing = await session.scalar(
                select(DeliveryRecordRow).where(
                    DeliveryRecordRow.idempotency_key == record.idempotency_key,
                    DeliveryRecordRow.recipient_user_id == record.recipient_user_id,
                    DeliveryRecordRow.channel == record.channel.value,
                )
            )
            if existing is None:
                raise RuntimeError(f"Dedupe conflict without a stored record: {record.dedupe_key}")
            return existing.to_entity(), False

    async def get(self, record_id: int) -> Optional[DeliveryRecord]:
        async with self._sessions() as session:
            row = await session.get(DeliveryRecordRow, record_id)
            return row.to_entity() if row else None

    async def find_by_idempotency_key(self, key: str) -> List[DeliveryRecord]:
        async with self._sessions() as session:
            rows = await session.scalars(
                select(DeliveryRecordRow)
                .where(DeliveryRecordRow.idempotency_key == key)
                .order_by(DeliveryRecordRow.id)
            )
            return [row.to_entity() for row in rows.all()]

    async def _apply(
        self, record_id: int, changes: Changes, expected: Optional[Tuple[DeliveryState, ...]] = None,
    ) -> bool:
        async with self._sessions() as session:
            row = await session.get(DeliveryRecordRow, record_id)
            if row is None:
                return False
            if row.expires_at is not None and row.expires_at <= utcnow():
                raise RecordExpiredError(record_id)
            stmt = update(DeliveryRecordRow).where(DeliveryRecordRow.id == record_id)
            if expected is not None:
                stmt = stmt.where(DeliveryRecordRow.state.in_([s.value for s in expected]))
            result = await session.execute(
                stmt.values({k: _column_value(v) for k, v in changes.items()})
            )
            await session.commit()
            return result.rowcount > 0

    async def claim_for_retry(self, record_id: int) -> Optional[DeliveryRecord]:
        now = utcnow()
        async with self._sessions() as session:
            result = await session.execute(
                update(DeliveryRecordRow)
                .where(
                    DeliveryRecordRow.id == record_id,
                    DeliveryRecordRow.state == DeliveryState.FAILED.value,
                    or_(DeliveryRecordRow.expires_at.is_(None), DeliveryRecordRow.expires_at > now),
                )
                .values(
                    state=DeliveryState.IN_FLIGHT.value,
                    retry_count=DeliveryRecordRow.retry_count + 1,
                    last_attempt_at=now,
                )
            )
            await session.commit()
            if result.rowcount != 1:
                return None
            row = await session.get(DeliveryRecordRow, record_id, populate_existing=True)
            return row.to_entity() if row else None

    async def find_retryable(
        self, older_than: datetime, max_retry: int, limit: Optional[int] = None,
    ) -> List[DeliveryRecord]:
        now = utcnow()
        last_touch = func.coalesce(DeliveryRecordRow.last_attempt_at, DeliveryRecordRow.created_at)
        stmt = (
            select(DeliveryRecordRow)
            .where(
                DeliveryRecordRow.state == DeliveryState.FAILED.value,
                DeliveryRecordRow.error_kind.in_([k.value for k in RETRYABLE_ERRORS]),
                DeliveryRecordRow.retry_count < max_retry,
                last_touch <= older_than,
                or_(DeliveryRecordRow.expires_at.is_(None), DeliveryRecordRow.expires_at > now),
            )
            .order_by(last_touch)
        )
        if limit:
            stmt = stmt.limit(limit)
        async with self._sessions() as session:
            rows = await session.scalars(stmt)
            return [row.to_entity() for row in rows.all()]

    async def _find_stale_in_flight(self, older_than: datetime) -> List[DeliveryRecord]:
        now = utcnow()
        last_touch = func.coalesce(DeliveryRecordRow.last_attempt_at, DeliveryRecordRow.created_at)
        stmt = select(DeliveryRecordRow).where(
            DeliveryRecordRow.state == DeliveryState.IN_FLIGHT.value,
            last_touch <= older_than,
            or_(DeliveryRecordRow.expires_at.is_(None), DeliveryRecordRow.expires_at > now),
        )
        async with self._sessions() as session:
            rows = await session.scalars(stmt)
            return [row.to_entity() for row in rows.all()]

    async def list_for_user(
        self, user_id: int, unread_only: bool = False, limit: int = 50,
    ) -> List[DeliveryRecord]:
        stmt = select(DeliveryRecordRow).where(DeliveryRecordRow.recipient_user_id == user_id)
        if unread_only:
            stmt = stmt.where(DeliveryRecordRow.is_opened.is_(False))
        stmt = stmt.order_by(DeliveryRecordRow.created_at.desc(), DeliveryRecordRow.id.desc()).limit(limit)
        async with self._sessions() as session:
            rows = await session.scalars(stmt)
            return [row.to_entity() for row in rows.all()]

    async def _all_since(self, since: Optional[datetime]) -> List[DeliveryRecord]:
        stmt = select(DeliveryRecordRow)
        if since is not None:
            stmt = stmt.where(DeliveryRecordRow.created_at >= since)
        async with self._sessions() as session:
            rows = await session.scalars(stmt)
            return [row.to_entity() for row in rows.all()]
