"""
Risk Scoring - Configuration.

============================================================
PURPOSE
============================================================
Weights and thresholds for the transaction risk heuristics.

============================================================
WEIGHTS
============================================================
Each heuristic adds a fixed weight to the score:

    blacklisted address     0.8
    suspicious contract     0.7
    high value transfer     0.6
    abnormal gas fee        0.3
    abnormal time           0.2
    self transfer           0.1
    zero value call         0.1

Weights are summed unclamped for level derivation; only the
reported score is clamped to 1.0.

============================================================
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional

from core.config import RiskSettings
from core.constants import WEI_PER_ETHER


@dataclass(frozen=True)
class RiskWeights:
    """Contribution of each heuristic to the score."""

    blacklist: float = 0.8
    high_value: float = 0.6
    suspicious_contract: float = 0.7
    abnormal_gas_fee: float = 0.3
    abnormal_time: float = 0.2
    self_transfer: float = 0.1
    zero_value_call: float = 0.1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "blacklist": self.blacklist,
            "high_value": self.high_value,
            "suspicious_contract": self.suspicious_contract,
            "abnormal_gas_fee": self.abnormal_gas_fee,
            "abnormal_time": self.abnormal_time,
            "self_transfer": self.self_transfer,
            "zero_value_call": self.zero_value_call,
        }


@dataclass(frozen=True)
class RiskDetectorConfig:
    """
    Thresholds for the risk detector.

    ============================================================
    THRESHOLDS
    ============================================================
    high_value_threshold_wei:
        Value strictly above this is a large transfer (1000 ETH)

    abnormal_gas_fee_wei:
        gas_price * gas strictly above this is abnormal (100 ETH)

    suspicious_hours:
        UTC hours (inclusive) treated as unusual activity time
    ============================================================
    """

    high_value_threshold_wei: int = 1000 * WEI_PER_ETHER
    abnormal_gas_fee_wei: int = 100 * WEI_PER_ETHER
    suspicious_hours: FrozenSet[int] = frozenset({2, 3, 4, 5, 6})
    weights: RiskWeights = field(default_factory=RiskWeights)

    @classmethod
    def from_settings(cls, settings: Optional[RiskSettings] = None) -> "RiskDetectorConfig":
        settings = settings or RiskSettings()
        return cls(
            high_value_threshold_wei=settings.high_value_threshold_wei,
            abnormal_gas_fee_wei=settings.abnormal_gas_fee_wei,
            suspicious_hours=frozenset(settings.suspicious_hours),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "high_value_threshold_wei": str(self.high_value_threshold_wei),
            "abnormal_gas_fee_wei": str(self.abnormal_gas_fee_wei),
            "suspicious_hours": sorted(self.suspicious_hours),
            "weights": self.weights.to_dict(),
        }
