"""
directory.py — User directory collaborator.

Users, roles, locations, device endpoints and case contact lists belong to
other subsystems. The fanout engine reads them through the narrow
``UserDirectory`` protocol; ``InMemoryUserDirectory`` backs development,
the simulation app and tests.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict
from datetime import timedelta
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple, runtime_checkable

from backend.app.notifications.models import ChannelEndpoint, ChannelType, utcnow
from backend.app.spatial.radius_utils import Coordinate, UserLocation

logger = logging.getLogger(__name__)

# Contact list kinds referenced by the escalation table
CONTACTS_SUPPORT_ORG = "support_org"
CONTACTS_MEDICAL = "medical"


@runtime_checkable
class UserDirectory(Protocol):

    async def get_active_endpoints(self, user_id: int, channel: ChannelType) -> List[ChannelEndpoint]:
        ...

    async def get_users_by_role(self, role: str) -> Set[int]:
        ...

    async def get_user_location(self, user_id: int) -> Optional[Coordinate]:
        ...

    async def get_alert_radius_km(self, user_id: int) -> Optional[float]:
        """The user's preferred alert radius, or None when unset."""
        ...

    async def get_contacts(self, kind: str, case_id: Optional[int]) -> Set[int]:
        ...

    async def deactivate_endpoint(self, endpoint_id: str) -> bool:
        ...

    async def candidate_users(self) -> List[UserLocation]:
        """Every user with a known location, for radius scans."""
        ...


class InMemoryUserDirectory:
    """Dict-backed ``UserDirectory`` with registration helpers."""

    def __init__(self) -> None:
        self._roles: Dict[int, str] = {}
        self._locations: Dict[int, Coordinate] = {}
        self._radius_km: Dict[int, float] = {}
        self._endpoints: Dict[str, ChannelEndpoint] = {}
        self._contacts: Dict[Tuple[str, Optional[int]], Set[int]] = defaultdict(set)
        self._endpoint_ids = itertools.count(1)
        self._lock = asyncio.Lock()

    # ── Registration ──

    def add_user(
        self,
        user_id: int,
        role: str = "user",
        *,
        location: Optional[Coordinate] = None,
        alert_radius_km: Optional[float] = None,
    ) -> None:
        self._roles[user_id] = role.lower()
        if location is not None:
            self._locations[user_id] = location
        if alert_radius_km is not None:
            self._radius_km[user_id] = alert_radius_km

    def set_location(self, user_id: int, location: Coordinate) -> None:
        self._locations[user_id] = location

    def register_endpoint(
        self,
        user_id: int,
        channel: ChannelType,
        address: str,
        *,
        platform: Optional[str] = None,
        endpoint_id: Optional[str] = None,
    ) -> ChannelEndpoint:
        """Register (or re-activate) an address. One per (user, channel, platform)."""
        for existing in self._endpoints.values():
            if (existing.user_id, existing.channel, existing.platform) == (user_id, channel, platform):
                existing.address = address
                existing.is_active = True
                existing.last_seen_at = utcnow()
                return existing

        endpoint = ChannelEndpoint(
            endpoint_id=endpoint_id or f"{channel.value}-{next(self._endpoint_ids)}",
            user_id=user_id,
            channel=channel,
            address=address,
            platform=platform,
            last_seen_at=utcnow(),
        )
        self._endpoints[endpoint.endpoint_id] = endpoint
        return endpoint

    def add_contact(self, kind: str, user_id: int, case_id: Optional[int] = None) -> None:
        """``case_id=None`` registers a contact for every case."""
        self._contacts[(kind, case_id)].add(user_id)

    # ── Device management ──

    def get_role(self, user_id: int) -> Optional[str]:
        return self._roles.get(user_id)

    def find_endpoint(
        self, user_id: int, channel: ChannelType, platform: Optional[str] = None,
    ) -> Optional[ChannelEndpoint]:
        for endpoint in self._endpoints.values():
            if (endpoint.user_id, endpoint.channel, endpoint.platform) == (user_id, channel, platform):
                return endpoint
        return None

    def endpoints_for(self, user_id: int, *, include_inactive: bool = False) -> List[ChannelEndpoint]:
        return [
            e for e in self._endpoints.values()
            if e.user_id == user_id and (include_inactive or e.is_active)
        ]

    def touch_endpoint(
        self, user_id: int, channel: ChannelType, platform: Optional[str] = None,
    ) -> Optional[ChannelEndpoint]:
        """Heartbeat: stamp last_seen_at on an active endpoint."""
        endpoint = self.find_endpoint(user_id, channel, platform)
        if endpoint is None or not endpoint.is_active:
            return None
        endpoint.last_seen_at = utcnow()
        return endpoint

    def endpoint_stats(self, recent_days: int = 7) -> Dict[str, Any]:
        cutoff = utcnow() - timedelta(days=recent_days)
        active = [e for e in self._endpoints.values() if e.is_active]
        by_channel: Dict[str, int] = defaultdict(int)
        by_platform: Dict[str, int] = defaultdict(int)
        for e in active:
            by_channel[e.channel.value] += 1
            by_platform[e.platform or "unknown"] += 1
        return {
            "total_endpoints": len(self._endpoints),
            "active_endpoints": len(active),
            "by_channel": dict(by_channel),
            "by_platform": dict(by_platform),
            "recently_seen": sum(
                1 for e in self._endpoints.values() if e.last_seen_at and e.last_seen_at >= cutoff
            ),
            "users": len(self._roles),
        }

    # ── UserDirectory ──

    async def get_active_endpoints(self, user_id: int, channel: ChannelType) -> List[ChannelEndpoint]:
        return [
            e for e in self._endpoints.values()
            if e.user_id == user_id and e.channel == channel and e.is_active
        ]

    async def get_users_by_role(self, role: str) -> Set[int]:
        role = role.lower()
        return {uid for uid, r in self._roles.items() if r == role}

    async def get_user_location(self, user_id: int) -> Optional[Coordinate]:
        return self._locations.get(user_id)

    async def get_alert_radius_km(self, user_id: int) -> Optional[float]:
        return self._radius_km.get(user_id)

    async def get_contacts(self, kind: str, case_id: Optional[int]) -> Set[int]:
        contacts = set(self._contacts.get((kind, None), set()))
        if case_id is not None:
            contacts |= self._contacts.get((kind, case_id), set())
        return contacts

    async def deactivate_endpoint(self, endpoint_id: str) -> bool:
        async with self._lock:
            endpoint = self._endpoints.get(endpoint_id)
            if endpoint is None or not endpoint.is_active:
                return False
            endpoint.is_active = False
        logger.info("Deactivated endpoint %s", endpoint_id, extra={"endpoint": endpoint_id})
        return True

    async def candidate_users(self) -> List[UserLocation]:
        return [UserLocation(uid, loc) for uid, loc in self._locations.items()]

    async def get_endpoint(self, endpoint_id: str) -> Optional[ChannelEndpoint]:
        return self._endpoints.get(endpoint_id)
