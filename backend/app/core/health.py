"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Alert store reachability (ping)
    • Dispatcher subscriptions vs. the active community
    • Observer states (background monitor should be listening)
    • Preference file writability

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from starlette.concurrency import run_in_threadpool

from backend.app.core.config import settings

if TYPE_CHECKING:
    from backend.app.alerts.alert_service import AlertService

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


_start_time = time.monotonic()


def check_store(service: "AlertService") -> ComponentHealth:
    comp = ComponentHealth(name=f"alert_store:{service.store.name}")
    start = time.monotonic()
    if service.store.ping():
        comp.message = "Store reachable"
    else:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "Store did not answer ping"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_observers(service: "AlertService") -> ComponentHealth:
    """Background monitor should be listening whenever a community is set."""
    comp = ComponentHealth(name="observers")
    start = time.monotonic()
    status = service.coordinator.status()
    background = service.coordinator.background

    comp.details = {
        "active_community": status["active_community"],
        "observers": {o["observer_id"]: o["state"] for o in status["observers"]},
        "subscriptions": service.dispatcher.stats()["communities"],
    }
    if status["active_community"] is None:
        comp.message = "No community joined"
    elif background.is_listening:
        comp.message = f"Monitoring {background.community_id}"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = background.last_error or "Background monitor not listening"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_preferences(service: "AlertService") -> ComponentHealth:
    comp = ComponentHealth(name="preferences")
    start = time.monotonic()
    path = service.preferences.path
    if path is None:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Memory only; watermark will not survive restarts"
    else:
        directory = path.parent if path.parent.exists() else path.parent.parent
        if os.access(directory, os.W_OK):
            comp.message = f"Persisted at {path}"
        else:
            comp.status = HealthStatus.UNHEALTHY
            comp.message = f"Cannot write {path}"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(service: "AlertService") -> HealthReport:
    """
    Run all health checks and aggregate into a report.

    Checks talk to the store synchronously, so each runs in the threadpool.
    """
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    for check in (check_store, check_observers, check_preferences):
        try:
            report.components.append(await run_in_threadpool(check, service))
        except Exception as exc:
            logger.warning("Health check %s failed: %s", check.__name__, exc)
            report.components.append(ComponentHealth(
                name=check.__name__.replace("check_", ""),
                status=HealthStatus.UNHEALTHY,
                message=str(exc),
            ))

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
