"""
Risk Scoring - Type Definitions.

============================================================
PURPOSE
============================================================
Data contracts for transaction risk detection.

- Risk levels and categories (stable wire strings)
- Factor codes emitted by the heuristics
- RiskResult (detector output)
- Alert (outbound record published on the alerts topic)

============================================================
DESIGN PRINCIPLES
============================================================
- All result types are immutable
- Enums for discrete values
- to_dict() produces JSON-safe primitives (big ints as strings)

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


# ============================================================
# ENUMS
# ============================================================


class RiskLevel(str, Enum):
    """
    Severity derived from the accumulated heuristic score.

    Score Range (unclamped sum):
    - CRITICAL: >= 0.8
    - HIGH:     >= 0.6
    - MEDIUM:   >= 0.4
    - LOW:      >= 0.2
    - INFO:     below 0.2
    """

    INFO = "INFO"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @classmethod
    def from_score(cls, score: float) -> "RiskLevel":
        if score >= 0.8:
            return cls.CRITICAL
        elif score >= 0.6:
            return cls.HIGH
        elif score >= 0.4:
            return cls.MEDIUM
        elif score >= 0.2:
            return cls.LOW
        return cls.INFO


class RiskType(str, Enum):
    """
    Alert category, picked by fixed priority when several match.

    BLACKLIST > HIGH_VALUE > SUSPICIOUS_CONTRACT > GENERAL
    """

    BLACKLIST = "BLACKLIST"
    HIGH_VALUE = "HIGH_VALUE"
    SUSPICIOUS_CONTRACT = "SUSPICIOUS_CONTRACT"
    GENERAL = "GENERAL"


class RiskFactor(str, Enum):
    """Heuristic that contributed to a score."""

    BLACKLISTED_ADDRESS = "blacklisted_address"
    HIGH_VALUE_TRANSACTION = "high_value_transaction"
    SUSPICIOUS_CONTRACT = "suspicious_contract"
    ABNORMAL_GAS_FEE = "abnormal_gas_fee"
    ABNORMAL_TIME = "abnormal_time"
    SELF_TRANSFER = "self_transfer"
    ZERO_VALUE_TRANSACTION = "zero_value_transaction"


class AlertStatus(str, Enum):
    # Later states belong to the downstream alert service
    ACTIVE = "ACTIVE"


# ============================================================
# RESULT TYPES
# ============================================================


@dataclass(frozen=True)
class RiskResult:
    """
    Outcome of analyzing one transaction.

    ============================================================
    FIELDS
    ============================================================
    - risk_detected: True if a primary heuristic fired
      (blacklist, high value, suspicious contract)
    - score: Accumulated weights, clamped to [0, 1]
    - raw_score: Accumulated weights before clamping
    - level: Derived from raw_score
    - factors: Factor codes in evaluation order
    - risk_type / title / description: Set only when detected
    ============================================================
    """

    risk_detected: bool
    score: float
    raw_score: float
    level: RiskLevel
    factors: Tuple[str, ...] = ()
    risk_type: Optional[RiskType] = None
    title: str = ""
    description: str = ""

    @property
    def is_high_risk(self) -> bool:
        return self.level in (RiskLevel.HIGH, RiskLevel.CRITICAL)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "risk_detected": self.risk_detected,
            "risk_score": self.score,
            "risk_level": self.level.value,
            "risk_factors": list(self.factors),
            "risk_type": self.risk_type.value if self.risk_type else None,
            "title": self.title,
            "description": self.description,
        }


@dataclass(frozen=True)
class Alert:
    """Risk alert as published on the alerts topic."""

    id: str
    type: RiskType
    level: RiskLevel
    title: str
    description: str
    tx_hash: str
    address: str
    network: str
    risk_score: float
    risk_factors: Tuple[str, ...]
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: AlertStatus = AlertStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "level": self.level.value,
            "title": self.title,
            "description": self.description,
            "tx_hash": self.tx_hash,
            "address": self.address,
            "network": self.network,
            "risk_score": self.risk_score,
            "risk_factors": list(self.risk_factors),
            "metadata": dict(self.metadata),
            "timestamp": self.timestamp.isoformat(),
            "status": self.status.value,
        }
