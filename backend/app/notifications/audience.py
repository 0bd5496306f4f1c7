"""
audience.py — Resolve who should receive an alert.

Audience sources (one per ``AudienceKind``):

    topic     subscribers of a topic; templates like ``case:{case_id}`` are
              filled from the event
    role      members of a role group plus subscribers of its role:<name> topic
    radius    users whose last known location is within range of the event
    explicit  ids addressed directly by the event producer
    contacts  support-org / medical contact lists of a case

═══════════════════════════════════════════════════════════════════════════
RADIUS PRECEDENCE
═══════════════════════════════════════════════════════════════════════════

Each candidate is tested against the first radius that is set:

    1. the user's own preferred alert radius (directory)
    2. the event's radius_km
    3. DEFAULT_ALERT_RADIUS_MILES (5 mi ≈ 8.05 km)

A failing source degrades to the empty set and is logged; it never fails
the event. Resolvers return deduplicated sets and ``resolve_plan`` unions
them.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from backend.app.core.config import settings
from backend.app.notifications.directory import UserDirectory
from backend.app.notifications.models import (
    AlertEvent,
    AudienceKind,
    AudienceSource,
    DispatchPlan,
    ExplicitMode,
)
from backend.app.notifications.subscription_store import SubscriptionStore
from backend.app.notifications.topics import role_topic
from backend.app.spatial.radius_utils import Coordinate, UserLocation, users_within_radius

logger = logging.getLogger(__name__)


@dataclass
class ResolvedAudience:
    """
    Union of a plan's audience sources.

    ``recipients`` maps user id → the topic that reached them (None when
    the user was reached through a non-topic source only).
    """
    recipients: Dict[int, Optional[str]] = field(default_factory=dict)
    source_counts: Dict[str, int] = field(default_factory=dict)
    failed_sources: List[str] = field(default_factory=list)

    def add(self, user_ids: Iterable[int], topic: Optional[str] = None) -> None:
        for uid in user_ids:
            if self.recipients.get(uid) is None:
                self.recipients[uid] = topic

    @property
    def user_ids(self) -> Set[int]:
        return set(self.recipients)

    def __len__(self) -> int:
        return len(self.recipients)


class AudienceResolver:

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        directory: UserDirectory,
        *,
        default_radius_km: Optional[float] = None,
    ):
        self._subscriptions = subscriptions
        self._directory = directory
        self._default_radius_km = default_radius_km or settings.default_alert_radius_km

    # ── Individual resolvers ──

    async def resolve_topic(self, topic: str) -> Set[int]:
        return set(await self._subscriptions.subscribers_of(topic))

    async def resolve_role(self, role: str) -> Set[int]:
        """Directory members of ``role`` plus subscribers of its role topic."""
        members: Set[int] = set()
        try:
            members |= set(await self._directory.get_users_by_role(role))
        except Exception as exc:
            logger.warning("Role lookup for %s failed, using topic only: %s", role, exc)
        topic = role_topic(role)
        try:
            members |= await self.resolve_topic(topic)
        except Exception as exc:
            logger.warning("Subscribers of %s unavailable, using directory only: %s", topic, exc)
        return members

    async def resolve_explicit(self, ids: Iterable[int]) -> Set[int]:
        return {int(uid) for uid in ids if uid is not None}

    async def resolve_contacts(self, kind: str, case_id: Optional[int] = None) -> Set[int]:
        return set(await self._directory.get_contacts(kind, case_id))

    async def resolve_radius(
        self, latitude: float, longitude: float, radius_km: Optional[float] = None,
    ) -> Set[int]:
        """
        Users within range of (latitude, longitude).

        Parameters
        ----------
        radius_km : float | None
            Event radius; used for users without a preferred radius.
        """
        center = Coordinate(latitude, longitude)
        candidates = await self._directory.candidate_users()
        if not candidates:
            return set()

        preferred = await asyncio.gather(
            *(self._directory.get_alert_radius_km(c.user_id) for c in candidates)
        )
        fallback = radius_km if radius_km and radius_km > 0 else self._default_radius_km
        radii: Dict[int, float] = {
            c.user_id: (pref if pref and pref > 0 else fallback)
            for c, pref in zip(candidates, preferred)
        }

        def radius_for(candidate: UserLocation) -> float:
            return radii[candidate.user_id]

        matched = users_within_radius(
            center, candidates, radius_for, max_radius_km=max(radii.values()),
        )
        return {c.user_id for c in matched}

    # ── Plan resolution ──

    async def _resolve_source(self, source: AudienceSource, event: AlertEvent) -> Set[int]:
        if source.kind == AudienceKind.TOPIC:
            topic = self.topic_for(source, event)
            return await self.resolve_topic(topic) if topic else set()
        if source.kind == AudienceKind.ROLE:
            return await self.resolve_role(source.value or "")
        if source.kind == AudienceKind.RADIUS:
            if not event.has_location:
                return set()
            return await self.resolve_radius(event.latitude, event.longitude, event.radius_km)
        if source.kind == AudienceKind.CONTACTS:
            return await self.resolve_contacts(source.value or "", event.related_case_id)
        if source.kind == AudienceKind.EXPLICIT:
            return await self.resolve_explicit(event.explicit_recipients)
        raise ValueError(f"Unsupported audience source: {source.kind}")

    @staticmethod
    def topic_for(source: AudienceSource, event: AlertEvent) -> Optional[str]:
        """Fill a topic template from the event; None when it cannot be filled."""
        template = source.value or ""
        if "{case_id}" in template and event.related_case_id is None:
            return None
        if "{user_id}" in template and event.related_user_id is None:
            return None
        return template.format(case_id=event.related_case_id, user_id=event.related_user_id)

    @classmethod
    def reached_topic(cls, source: AudienceSource, event: AlertEvent) -> Optional[str]:
        """Topic whose notification count a delivery through ``source`` bumps."""
        if source.kind == AudienceKind.TOPIC:
            return cls.topic_for(source, event)
        if source.kind == AudienceKind.ROLE and source.value:
            return role_topic(source.value)
        return None

    async def resolve_plan(self, plan: DispatchPlan, event: AlertEvent) -> ResolvedAudience:
        audience = ResolvedAudience()
        explicit = await self.resolve_explicit(event.explicit_recipients)

        if plan.explicit_mode == ExplicitMode.OVERRIDE and explicit:
            audience.add(explicit)
            audience.source_counts["explicit"] = len(explicit)
            return audience

        for source in plan.audience_sources:
            label = source.describe()
            try:
                user_ids = await self._resolve_source(source, event)
            except Exception as exc:
                logger.warning(
                    "Audience source %s failed, treating as empty: %s", label, exc,
                    extra={"event_id": event.event_id, "category": event.category},
                )
                audience.failed_sources.append(label)
                continue
            audience.add(user_ids, self.reached_topic(source, event))
            audience.source_counts[label] = len(user_ids)

        if explicit:
            audience.add(explicit)
            audience.source_counts["explicit"] = len(explicit)

        logger.info(
            "Resolved %d recipients for %s from %s",
            len(audience), event.category, audience.source_counts,
            extra={"event_id": event.event_id, "recipient_count": len(audience)},
        )
        return audience
