"""
events.py — Build AlertEvents from case facts.

Event producers (case routes, background jobs) call these helpers instead
of assembling titles and bodies themselves, so wording stays consistent
across channels.

    Builder                       Category               Priority
    ────────────────────────────  ─────────────────────  ────────
    urgent_missing_event          urgent_missing         URGENT
    special_needs_event           special_needs_urgent   URGENT
    medical_emergency_event       medical_emergency      URGENT
    sighting_event                sighting_report        HIGH
    found_event                   case_found             HIGH
    case_update_event             routine_update         NORMAL
    daily_digest_event            daily_digest           LOW
"""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, Iterable, Optional, Sequence

from backend.app.notifications.models import AlertCategory, AlertEvent, AlertPriority

DAILY_DIGEST_CATEGORY = "daily_digest"


def _location_fields(latitude: Optional[float], longitude: Optional[float]) -> Dict[str, Any]:
    if latitude is None or longitude is None:
        return {}
    return {"latitude": latitude, "longitude": longitude}


def urgent_missing_event(
    case_id: int,
    individual_name: str,
    location: str,
    *,
    description: str = "",
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    radius_km: Optional[float] = None,
    related_user_id: Optional[int] = None,
) -> AlertEvent:
    """
    Missing-person alert for everyone near the last known location.

    Parameters
    ----------
    case_id : int
    individual_name : str
    location : str
        Human-readable last known location.
    latitude, longitude : float | None
        Enables the radius audience when both are set.
    radius_km : float | None
        Search radius for users without a preferred radius.
    """
    body = f"{individual_name} reported missing at {location}. Case ID: {case_id}. Call 911 immediately if seen."
    if description:
        body = f"{body} {description}"
    return AlertEvent(
        category=AlertCategory.URGENT_MISSING,
        title=f"🚨 URGENT: Missing Person Alert - {individual_name}",
        body=body,
        priority=AlertPriority.URGENT,
        related_case_id=case_id,
        related_user_id=related_user_id,
        structured_data={"individual_name": individual_name, "location": location},
        radius_km=radius_km,
        **_location_fields(latitude, longitude),
    )


def special_needs_event(
    case_id: int,
    individual_name: str,
    location: str,
    special_needs: str,
    *,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    radius_km: Optional[float] = None,
) -> AlertEvent:
    return AlertEvent(
        category=AlertCategory.SPECIAL_NEEDS_URGENT,
        title=f"🚨 URGENT: Missing Person with Special Needs - {individual_name}",
        body=(
            f"{individual_name} reported missing at {location}. Special needs: {special_needs}. "
            f"Case ID: {case_id}. Approach calmly and call 911."
        ),
        priority=AlertPriority.URGENT,
        related_case_id=case_id,
        structured_data={
            "individual_name": individual_name,
            "location": location,
            "special_needs": special_needs,
        },
        radius_km=radius_km,
        **_location_fields(latitude, longitude),
    )


def medical_emergency_event(
    case_id: int,
    individual_name: str,
    condition: str,
    *,
    explicit_recipients: Sequence[int] = (),
) -> AlertEvent:
    return AlertEvent(
        category=AlertCategory.MEDICAL_EMERGENCY,
        title=f"🚨 EMERGENCY: {individual_name} needs medical attention",
        body=f"{individual_name} (case {case_id}) has a medical emergency: {condition}. Call 911 immediately.",
        priority=AlertPriority.URGENT,
        related_case_id=case_id,
        explicit_recipients=tuple(explicit_recipients),
        structured_data={"individual_name": individual_name, "condition": condition},
    )


def sighting_event(
    case_id: int,
    individual_name: str,
    location: str,
    *,
    reported_by: Optional[int] = None,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
) -> AlertEvent:
    return AlertEvent(
        category=AlertCategory.SIGHTING_REPORT,
        title=f"Possible sighting: {individual_name}",
        body=f"{individual_name} (case {case_id}) may have been seen at {location}.",
        priority=AlertPriority.HIGH,
        related_case_id=case_id,
        related_user_id=reported_by,
        structured_data={"individual_name": individual_name, "location": location},
        **_location_fields(latitude, longitude),
    )


def found_event(case_id: int, individual_name: str, found_location: str = "") -> AlertEvent:
    where = f" at {found_location}" if found_location else ""
    return AlertEvent(
        category=AlertCategory.CASE_FOUND,
        title=f"✅ FOUND: {individual_name} has been located",
        body=f"{individual_name} (case {case_id}) has been found{where}. Thank you for helping.",
        priority=AlertPriority.HIGH,
        related_case_id=case_id,
        structured_data={"individual_name": individual_name, "found_location": found_location},
    )


def case_update_event(case_id: int, status: str, *, updated_by: Optional[str] = None) -> AlertEvent:
    body = f"Case {case_id} status changed to {status}."
    if updated_by:
        body = f"{body} Updated by {updated_by}."
    return AlertEvent(
        category=AlertCategory.ROUTINE_UPDATE,
        title=f"Case Update - {case_id} - Status: {status}",
        body=body,
        priority=AlertPriority.NORMAL,
        related_case_id=case_id,
        structured_data={"status": status, "updated_by": updated_by},
    )


def daily_digest_event(case_ids: Iterable[int], *, day: Optional[date] = None) -> AlertEvent:
    ids = sorted(set(case_ids))
    day = day or date.today()
    listing = ", ".join(str(i) for i in ids) if ids else "none"
    return AlertEvent(
        category=DAILY_DIGEST_CATEGORY,
        title=f"Daily Case Digest - {day:%m/%d/%Y}",
        body=f"{len(ids)} active case(s): {listing}.",
        priority=AlertPriority.LOW,
        structured_data={"case_ids": ids, "date": day.isoformat()},
    )
