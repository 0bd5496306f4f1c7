"""
escalation.py — Category → DispatchPlan policy.

The table is data, not branches. It can be replaced at startup from a JSON
document (``ESCALATION_TABLE_PATH``) that is validated with pydantic.

═══════════════════════════════════════════════════════════════════════════
DEFAULT ESCALATION TABLE
═══════════════════════════════════════════════════════════════════════════

    Category              Channels                     Audience
    ────────────────────  ───────────────────────────  ─────────────────────────────────────
    urgent_missing        realtime push email sms      topic(case) role(admin) radius
    special_needs_urgent  realtime push email sms      topic(case) role(admin) radius
                                                       contacts(support_org)
    medical_emergency     push email sms               contacts(medical) role(admin)
    sighting_report       realtime email               role(law_enforcement) topic(case)
    case_found            realtime push email          topic(case) role(admin)
    routine_update        realtime push                topic(case)
    daily_digest          email                        role(admin)

JSON document shape::

    {
      "urgent_missing": {
        "channels": ["realtime", "push", "email", "sms"],
        "audience": [{"kind": "topic", "value": "case:{case_id}"},
                     {"kind": "role", "value": "admin"},
                     {"kind": "radius"}],
        "explicit_mode": "extend"
      },
      ...
    }
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, Field, RootModel, field_validator, model_validator

from backend.app.core.errors import UnknownCategoryError
from backend.app.notifications.models import (
    AlertEvent,
    AudienceKind,
    AudienceSource,
    ChannelType,
    DispatchPlan,
    ExplicitMode,
)

logger = logging.getLogger(__name__)

CASE_TOPIC_TEMPLATE = "case:{case_id}"


# ═══════════════════════════════════════════════════════════════════════════
# Table schema
# ═══════════════════════════════════════════════════════════════════════════

class AudienceSourceSpec(BaseModel):
    kind: AudienceKind
    value: Optional[str] = None

    @model_validator(mode="after")
    def _value_required(self) -> "AudienceSourceSpec":
        if self.kind in (AudienceKind.TOPIC, AudienceKind.ROLE, AudienceKind.CONTACTS) and not self.value:
            raise ValueError(f"audience source '{self.kind.value}' needs a value")
        return self

    def to_source(self) -> AudienceSource:
        return AudienceSource(self.kind, self.value)


class CategoryRule(BaseModel):
    channels: List[ChannelType] = Field(min_length=1)
    audience: List[AudienceSourceSpec] = Field(min_length=1)
    explicit_mode: ExplicitMode = ExplicitMode.EXTEND

    @field_validator("channels")
    @classmethod
    def _unique_channels(cls, v: List[ChannelType]) -> List[ChannelType]:
        if len(set(v)) != len(v):
            raise ValueError("channels must not repeat")
        return v


class EscalationTable(RootModel[Dict[str, CategoryRule]]):

    @field_validator("root")
    @classmethod
    def _non_empty(cls, v: Dict[str, CategoryRule]) -> Dict[str, CategoryRule]:
        if not v:
            raise ValueError("escalation table is empty")
        return v


def _rule(channels: List[str], audience: List[Dict[str, Any]], **kw: Any) -> Dict[str, Any]:
    return {"channels": channels, "audience": audience, **kw}


_CASE = {"kind": "topic", "value": CASE_TOPIC_TEMPLATE}
_ADMINS = {"kind": "role", "value": "admin"}
_RADIUS = {"kind": "radius"}

DEFAULT_ESCALATION_TABLE: Dict[str, Dict[str, Any]] = {
    "urgent_missing": _rule(
        ["realtime", "push", "email", "sms"], [_CASE, _ADMINS, _RADIUS],
    ),
    "special_needs_urgent": _rule(
        ["realtime", "push", "email", "sms"],
        [_CASE, _ADMINS, _RADIUS, {"kind": "contacts", "value": "support_org"}],
    ),
    "medical_emergency": _rule(
        ["push", "email", "sms"], [{"kind": "contacts", "value": "medical"}, _ADMINS],
    ),
    "sighting_report": _rule(
        ["realtime", "email"], [{"kind": "role", "value": "law_enforcement"}, _CASE],
    ),
    "case_found": _rule(
        ["realtime", "push", "email"], [_CASE, _ADMINS],
    ),
    "routine_update": _rule(
        ["realtime", "push"], [_CASE],
    ),
    "daily_digest": _rule(
        ["email"], [_ADMINS],
    ),
}


# ═══════════════════════════════════════════════════════════════════════════
# Policy
# ═══════════════════════════════════════════════════════════════════════════

class EscalationPolicy:
    """Look up the dispatch plan for an event category."""

    def __init__(self, table: Optional[Mapping[str, Any]] = None):
        validated = EscalationTable.model_validate(
            dict(DEFAULT_ESCALATION_TABLE if table is None else table)
        )
        self._plans: Dict[str, DispatchPlan] = {
            category: DispatchPlan(
                category=category,
                channels=frozenset(rule.channels),
                audience_sources=tuple(spec.to_source() for spec in rule.audience),
                explicit_mode=rule.explicit_mode,
            )
            for category, rule in validated.root.items()
        }

    @classmethod
    def from_json(cls, source: Union[str, Path]) -> "EscalationPolicy":
        """Load a table from a JSON file path."""
        with open(source, "r", encoding="utf-8") as fh:
            table = json.load(fh)
        logger.info("Loaded escalation table with %d categories from %s", len(table), source)
        return cls(table)

    @property
    def categories(self) -> List[str]:
        return sorted(self._plans)

    def plan(self, category: str, event: Optional[AlertEvent] = None) -> DispatchPlan:
        """
        Dispatch plan for ``category``.

        ``event`` is accepted so rules can later depend on event fields;
        the table lookup itself only uses the category.

        Raises
        ------
        UnknownCategoryError
            When the category has no table entry.
        """
        try:
            return self._plans[category]
        except KeyError:
            raise UnknownCategoryError(category) from None

    def to_dict(self) -> Dict[str, Any]:
        return {c: p.to_dict() for c, p in sorted(self._plans.items())}
