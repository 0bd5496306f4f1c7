"""
topics.py — Topic naming, validation and role defaults.

Topics are plain strings naming a broadcastable interest group:

    org:all            every registered user
    org:system         maintenance / system notices
    role:<role>        role groups (role:admin, role:law_enforcement, ...)
    case:<id>          followers of one case
    region:<slug>      geographic groups
    priority:<level>   opt-in for high-priority traffic only
"""

from __future__ import annotations

import re
from typing import Dict, List, Optional

from backend.app.core.errors import InvalidTopicError

TOPIC_MAX_LENGTH = 100
_TOPIC_RE = re.compile(r"[A-Za-z0-9_:-]+")

ORG_ALL = "org:all"
ORG_SYSTEM = "org:system"
PRIORITY_HIGH = "priority:high"
PRIORITY_CRITICAL = "priority:critical"
REGION_TX_HOUSTON = "region:tx_houston"
REGION_TX_DALLAS = "region:tx_dallas"

# Roles that get a dedicated role:<name> topic on default subscription
ROLE_TOPICS: Dict[str, str] = {
    "admin": "role:admin",
    "parent": "role:parent",
    "moderator": "role:moderator",
    "law_enforcement": "role:law_enforcement",
}


def is_valid_topic(topic: Optional[str]) -> bool:
    if not topic or not topic.strip():
        return False
    if len(topic) > TOPIC_MAX_LENGTH:
        return False
    return _TOPIC_RE.fullmatch(topic) is not None


def validate_topic(topic: Optional[str]) -> str:
    """Return ``topic`` unchanged or raise InvalidTopicError."""
    if not is_valid_topic(topic):
        raise InvalidTopicError(topic or "")
    return topic  # type: ignore[return-value]


def case_topic(case_id: int) -> str:
    return f"case:{case_id}"


def role_topic(role: str) -> str:
    return ROLE_TOPICS.get(role.lower(), f"role:{role.lower()}")


def role_based_topics(role: str) -> List[str]:
    topic = ROLE_TOPICS.get((role or "").lower())
    return [topic] if topic else []


def default_topics(role: str) -> List[str]:
    """Topics every user of ``role`` is auto-subscribed to."""
    return [ORG_ALL, ORG_SYSTEM, *role_based_topics(role)]


def predefined_topics() -> List[str]:
    return [
        ORG_ALL,
        ORG_SYSTEM,
        *ROLE_TOPICS.values(),
        REGION_TX_HOUSTON,
        REGION_TX_DALLAS,
        PRIORITY_HIGH,
        PRIORITY_CRITICAL,
    ]
