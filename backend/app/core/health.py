"""
Health check aggregation — deep health probe for the fanout engine.

Checks:
    • Delivery record store (read round trip)
    • Subscription store (read round trip)
    • Subscriber cache (Redis, optional)
    • Channel adapters configured for every channel
    • Background jobs running
    • Retry backlog size

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List

from backend.app.core.config import settings

if TYPE_CHECKING:
    from backend.app.notifications.container import NotificationContainer

logger = logging.getLogger(__name__)

# Retry backlog above this many records reports DEGRADED
RETRY_BACKLOG_WARN = 1000


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


_start_time = time.monotonic()


async def _timed(name: str, probe: Callable[[ComponentHealth], Awaitable[None]]) -> ComponentHealth:
    """Run ``probe``; an exception marks the component unhealthy."""
    comp = ComponentHealth(name=name)
    start = time.monotonic()
    try:
        await probe(comp)
    except Exception as e:
        logger.warning("Health check %s failed: %s", name, e)
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_delivery_store(container: "NotificationContainer") -> ComponentHealth:
    async def probe(comp: ComponentHealth) -> None:
        await container.records.get(0)
        comp.message = "Delivery records readable"
        comp.details = {"backend": type(container.records).__name__}
    return await _timed("delivery_store", probe)


async def check_subscription_store(container: "NotificationContainer") -> ComponentHealth:
    async def probe(comp: ComponentHealth) -> None:
        await container.subscriptions.is_subscribed(0, "org:system")
        comp.message = "Subscriptions readable"
        comp.details = {"backend": type(container.subscriptions).__name__}
    return await _timed("subscription_store", probe)


async def check_cache(container: "NotificationContainer") -> ComponentHealth:
    async def probe(comp: ComponentHealth) -> None:
        if container.cache is None:
            comp.message = "Subscriber cache disabled"
            return
        ok = await container.cache.set_json("health:ping", 1, ttl=5)
        if not ok:
            comp.status = HealthStatus.DEGRADED
            comp.message = "Redis unreachable, reading subscribers from the store"
        else:
            comp.message = "Cache available"
    return await _timed("subscriber_cache", probe)


async def check_channels(container: "NotificationContainer") -> ComponentHealth:
    async def probe(comp: ComponentHealth) -> None:
        configured = sorted(ch.value for ch in container.adapters)
        missing = sorted({"realtime", "push", "email", "sms"} - set(configured))
        comp.details = {
            "configured": configured,
            "realtime_connections": container.connections.connection_count,
        }
        if missing:
            comp.status = HealthStatus.DEGRADED
            comp.message = f"Missing channels: {', '.join(missing)}"
        else:
            comp.message = "All channels configured"
    return await _timed("channels", probe)


async def check_background_jobs(container: "NotificationContainer") -> ComponentHealth:
    async def probe(comp: ComponentHealth) -> None:
        jobs = container.jobs.status()
        comp.details = {"jobs": jobs}
        if not settings.ENABLE_BACKGROUND_JOBS:
            comp.message = "Background jobs disabled"
        elif not container.jobs.running:
            comp.status = HealthStatus.DEGRADED
            comp.message = "Background jobs not running"
        else:
            failed = [j["name"] for j in jobs if j["last_run"] and j["last_run"]["status"] == "failed"]
            if failed:
                comp.status = HealthStatus.DEGRADED
                comp.message = f"Last run failed: {', '.join(failed)}"
            else:
                comp.message = f"{len(jobs)} jobs running"
    return await _timed("background_jobs", probe)


async def check_retry_backlog(container: "NotificationContainer") -> ComponentHealth:
    async def probe(comp: ComponentHealth) -> None:
        backlog = await container.records.find_retryable(
            older_than=datetime.now(timezone.utc),
            max_retry=container.retry_scheduler.max_retries,
            limit=RETRY_BACKLOG_WARN + 1,
        )
        comp.details = {"pending_retries": len(backlog)}
        if len(backlog) > RETRY_BACKLOG_WARN:
            comp.status = HealthStatus.DEGRADED
            comp.message = f"Retry backlog above {RETRY_BACKLOG_WARN}"
        else:
            comp.message = f"{len(backlog)} records awaiting retry"
    return await _timed("retry_backlog", probe)


async def run_health_check(container: "NotificationContainer") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_delivery_store(container),
        check_subscription_store(container),
        check_cache(container),
        check_channels(container),
        check_background_jobs(container),
        check_retry_backlog(container),
    ]
    for coro in checks:
        report.components.append(await coro)

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
