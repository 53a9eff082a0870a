"""
Health check aggregation — deep health check for the relay's dependencies.

Checks:
    • Realtime store reachability (a read of the alerts collection)
    • Push broadcast configuration (FCM server key present)
    • Advisory configuration (Gemini API key present)
    • Live snapshot subscription (has the feed cache received data)

Missing push or advisory keys only degrade the service: citizens can
still submit and dispatchers can still work the feed. A store that
cannot be read makes the relay unhealthy.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from sos_relay.app.core.config import settings
from sos_relay.app.core.errors import RelayError

if TYPE_CHECKING:
    from sos_relay.app.services import RelayServices

logger = logging.getLogger(__name__)


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


# Track application start time
_start_time = time.monotonic()


async def check_store(services: "RelayServices") -> ComponentHealth:
    """Read the alerts collection once."""
    comp = ComponentHealth(name="realtime_store")
    start = time.monotonic()
    try:
        alerts = await services.store.snapshot()
        comp.message = "Store reachable"
        comp.details = {
            "backend": type(services.backend).__name__,
            "alerts": len(alerts),
        }
    except RelayError as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = e.message
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_push() -> ComponentHealth:
    comp = ComponentHealth(name="push_broadcast")
    if settings.push_configured:
        comp.message = "FCM server key configured"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "FCM_SERVER_KEY not set; broadcasts are recorded only"
    return comp


async def check_advisory() -> ComponentHealth:
    comp = ComponentHealth(name="advisory")
    if settings.GEMINI_API_KEY:
        comp.message = f"Model {settings.GEMINI_MODEL}"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "GEMINI_API_KEY not set; fallback advice only"
    return comp


async def check_live_feed(services: "RelayServices") -> ComponentHealth:
    comp = ComponentHealth(name="live_feed")
    live = services.live
    comp.details = {
        "updates": live.updates,
        "alerts": len(live.alerts),
        "updated_at": live.updated_at or None,
    }
    if live.updates == 0:
        comp.status = HealthStatus.DEGRADED
        comp.message = "No snapshot received yet"
    return comp


async def run_health_check(services: "RelayServices") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_store(services),
        check_push(),
        check_advisory(),
        check_live_feed(services),
    ]

    for coro in checks:
        comp = await coro
        report.components.append(comp)

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    if report.status != HealthStatus.HEALTHY:
        logger.info("Health check: %s", report.status.value)
    return report
