"""
Monitoring - Health Checks.

============================================================
RESPONSIBILITY
============================================================
Aggregates component health into one process status.

============================================================
HEALTH STATES
============================================================
- HEALTHY: All checks passing
- DEGRADED: Some checks failing, system operational
- UNHEALTHY: Every network is down, or a shared
  dependency (store, outbound transport) is failing
- UNKNOWN: Nothing to check yet

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ComponentHealth:
    name: str
    healthy: bool
    critical: bool = False
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "critical": self.critical,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class HealthReport:
    state: HealthState
    components: List[ComponentHealth] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.state.value,
            "components": [c.to_dict() for c in self.components],
            "checked_at": self.checked_at.isoformat(),
        }


def aggregate_health(components: List[ComponentHealth]) -> HealthReport:
    """
    Combine component results.

    A failing critical component makes the process unhealthy.
    Non-critical components (networks) only degrade it unless
    all of them are failing.
    """
    if not components:
        return HealthReport(state=HealthState.UNKNOWN)

    if any(c.critical and not c.healthy for c in components):
        return HealthReport(state=HealthState.UNHEALTHY, components=components)

    optional = [c for c in components if not c.critical]
    failing = [c for c in optional if not c.healthy]
    if optional and len(failing) == len(optional):
        state = HealthState.UNHEALTHY
    elif failing:
        state = HealthState.DEGRADED
    else:
        state = HealthState.HEALTHY
    return HealthReport(state=state, components=components)
