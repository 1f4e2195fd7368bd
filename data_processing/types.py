"""
Data Processing - Type Definitions.

============================================================
PURPOSE
============================================================
Shared types for transaction filtering.

- Filter reason codes (stable strings, used as metric labels)
- Filter result contract
- Filter rule configuration

============================================================
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Tuple

from core.constants import MIN_GAS_PRICE_WEI, MIN_TX_GAS


# =============================================================
# ENUMS
# =============================================================

class FilterReason(str, Enum):
    """Why a transaction was rejected. Values are stable wire strings."""
    BELOW_MIN_VALUE = "below_min_value"
    EXCLUDED_CONTRACT = "excluded_contract"
    ZERO_VALUE_NON_CONTRACT = "zero_value_non_contract"
    FAILED_TRANSACTION = "failed_transaction"
    EMPTY_TRANSACTION = "empty_transaction"
    SPAM_TRANSACTION = "spam_transaction"
    DUPLICATE_TRANSACTION = "duplicate_transaction"


# =============================================================
# CONFIGURATION TYPES
# =============================================================

@dataclass(frozen=True)
class FilterRules:
    """Static thresholds for the filter engine."""
    min_value_wei: int = 0
    min_gas_price_wei: int = MIN_GAS_PRICE_WEI
    min_gas_limit: int = MIN_TX_GAS
    include_bonus: float = 0.1
    exclude_contracts: FrozenSet[str] = frozenset()
    include_addresses: FrozenSet[str] = frozenset()

    @classmethod
    def build(
        cls,
        min_value_wei: int = 0,
        exclude_contracts: Iterable[str] = (),
        include_addresses: Iterable[str] = (),
    ) -> "FilterRules":
        return cls(
            min_value_wei=min_value_wei,
            exclude_contracts=frozenset(a.lower() for a in exclude_contracts),
            include_addresses=frozenset(a.lower() for a in include_addresses),
        )


# =============================================================
# RESULT TYPES
# =============================================================

@dataclass(frozen=True)
class FilterResult:
    """Outcome of filtering one transaction."""
    should_process: bool
    reasons: Tuple[str, ...] = ()
    score: float = 0.0

    @property
    def primary_reason(self) -> str:
        return self.reasons[0] if self.reasons else ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "should_process": self.should_process,
            "reasons": list(self.reasons),
            "score": self.score,
        }


@dataclass
class FilterStats:
    """Counters kept by the filter engine (observability only)."""
    evaluated: int = 0
    passed: int = 0
    included: int = 0
    rejected: int = 0
    by_reason: Dict[str, int] = field(default_factory=dict)

    def record(self, result: FilterResult, included: bool = False) -> None:
        self.evaluated += 1
        if result.should_process:
            self.passed += 1
            if included:
                self.included += 1
        else:
            self.rejected += 1
            for reason in result.reasons:
                self.by_reason[reason] = self.by_reason.get(reason, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evaluated": self.evaluated,
            "passed": self.passed,
            "included": self.included,
            "rejected": self.rejected,
            "by_reason": dict(self.by_reason),
        }
