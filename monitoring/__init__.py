"""
Monitoring Package.

============================================================
PURPOSE
============================================================
Observational layer for the ingestion pipeline.

- metrics: counters, latency, gauges and the risk histogram
- health_checks: component health aggregation

Nothing here changes pipeline behavior.

============================================================
"""

from .metrics import (
    LatencyStats,
    RollingCounter,
    Histogram,
    MetricsRecorder,
    RISK_SCORE_BUCKETS,
)
from .health_checks import (
    HealthState,
    ComponentHealth,
    HealthReport,
    aggregate_health,
)

__all__ = [
    # Metrics
    "LatencyStats",
    "RollingCounter",
    "Histogram",
    "MetricsRecorder",
    "RISK_SCORE_BUCKETS",
    # Health
    "HealthState",
    "ComponentHealth",
    "HealthReport",
    "aggregate_health",
]
