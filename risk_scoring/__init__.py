"""
Risk Scoring Package.

============================================================
PURPOSE
============================================================
Heuristic, per-transaction risk detection.

- Pure scoring (no I/O), deterministic per input
- Injected blacklist / suspicious-contract sets
- Alerts built for detected risks and published downstream

============================================================
USAGE
============================================================
    from risk_scoring import RiskDetector, build_alert

    detector = RiskDetector()
    result = detector.analyze(tx)
    if result.risk_detected:
        alert = build_alert(tx, result)

============================================================
"""

from .types import (
    RiskLevel,
    RiskType,
    RiskFactor,
    AlertStatus,
    RiskResult,
    Alert,
)
from .config import RiskWeights, RiskDetectorConfig
from .address_sets import (
    AddressSet,
    InMemoryAddressSet,
    DEFAULT_BLACKLIST,
    DEFAULT_SUSPICIOUS_CONTRACTS,
)
from .detector import RiskDetector
from .alerting import build_alert, alert_id

__all__ = [
    # Types
    "RiskLevel",
    "RiskType",
    "RiskFactor",
    "AlertStatus",
    "RiskResult",
    "Alert",
    # Config
    "RiskWeights",
    "RiskDetectorConfig",
    # Address sets
    "AddressSet",
    "InMemoryAddressSet",
    "DEFAULT_BLACKLIST",
    "DEFAULT_SUSPICIOUS_CONTRACTS",
    # Detector
    "RiskDetector",
    "build_alert",
    "alert_id",
]
