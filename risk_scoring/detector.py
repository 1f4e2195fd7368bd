"""
Risk Scoring - Transaction Risk Detector.

============================================================
PURPOSE
============================================================
Computes a heuristic risk score and factor list for one
normalized transaction.

============================================================
DESIGN PRINCIPLES
============================================================
- Pure: no network I/O, no shared state mutated by analyze()
- Heuristics are independent; every one is evaluated
- Set lookups are O(1) against injected AddressSets
- risk_type follows a fixed priority so alert titles are
  deterministic when several heuristics fire

============================================================
USAGE
============================================================
    detector = RiskDetector()
    result = detector.analyze(tx)
    if result.risk_detected:
        alert = build_alert(tx, result)

============================================================
"""

import logging
from dataclasses import replace
from typing import List, Optional, Tuple

from chain_ingestion.models import Transaction
from risk_scoring.address_sets import AddressSet, InMemoryAddressSet
from risk_scoring.config import RiskDetectorConfig
from risk_scoring.types import RiskFactor, RiskLevel, RiskResult, RiskType


logger = logging.getLogger(__name__)


# Title and description per category
RISK_TYPE_TEXT = {
    RiskType.BLACKLIST: (
        "Blacklisted address transaction",
        "Transaction involves a blacklisted address",
    ),
    RiskType.HIGH_VALUE: (
        "Large value transfer",
        "Large value transfer detected",
    ),
    RiskType.SUSPICIOUS_CONTRACT: (
        "Suspicious contract interaction",
        "Interaction with a suspicious smart contract detected",
    ),
    RiskType.GENERAL: (
        "General risk transaction",
        "Potential risk factors detected",
    ),
}


class RiskDetector:
    """
    Weighted heuristic scorer.

    ============================================================
    RESPONSIBILITIES
    ============================================================
    1. Evaluate every heuristic against a transaction
    2. Sum weights, derive level from the unclamped sum
    3. Pick the alert category by priority
    4. Expose runtime updates for the address sets
    ============================================================
    """

    def __init__(
        self,
        config: Optional[RiskDetectorConfig] = None,
        blacklist: Optional[AddressSet] = None,
        suspicious_contracts: Optional[AddressSet] = None,
    ) -> None:
        self.config = config or RiskDetectorConfig()
        self._blacklist = blacklist if blacklist is not None else InMemoryAddressSet.blacklist()
        self._suspicious = (
            suspicious_contracts
            if suspicious_contracts is not None
            else InMemoryAddressSet.suspicious_contracts()
        )

    def analyze(self, tx: Transaction) -> RiskResult:
        """
        Score a transaction.

        Args:
            tx: Normalized transaction

        Returns:
            RiskResult with score clamped to [0, 1]
        """
        weights = self.config.weights
        factors: List[str] = []
        matched: List[RiskType] = []
        total = 0.0

        if self._blacklist.contains(tx.from_address) or self._blacklist.contains(tx.to_address):
            total += weights.blacklist
            factors.append(RiskFactor.BLACKLISTED_ADDRESS.value)
            matched.append(RiskType.BLACKLIST)

        if tx.value > self.config.high_value_threshold_wei:
            total += weights.high_value
            factors.append(RiskFactor.HIGH_VALUE_TRANSACTION.value)
            matched.append(RiskType.HIGH_VALUE)

        if tx.to_address and self._suspicious.contains(tx.to_address):
            total += weights.suspicious_contract
            factors.append(RiskFactor.SUSPICIOUS_CONTRACT.value)
            matched.append(RiskType.SUSPICIOUS_CONTRACT)

        if tx.gas_price * tx.gas > self.config.abnormal_gas_fee_wei:
            total += weights.abnormal_gas_fee
            factors.append(RiskFactor.ABNORMAL_GAS_FEE.value)

        if tx.timestamp.hour in self.config.suspicious_hours:
            total += weights.abnormal_time
            factors.append(RiskFactor.ABNORMAL_TIME.value)

        if tx.to_address and tx.from_address.lower() == tx.to_address.lower():
            total += weights.self_transfer
            factors.append(RiskFactor.SELF_TRANSFER.value)

        if tx.value == 0 and tx.is_contract_call:
            total += weights.zero_value_call
            factors.append(RiskFactor.ZERO_VALUE_TRANSACTION.value)

        # Float sums like 0.2 + 0.1 + 0.1 must land on their threshold
        total = round(total, 6)
        detected = bool(matched)
        risk_type, title, description = self._categorize(matched)

        return RiskResult(
            risk_detected=detected,
            score=min(total, 1.0),
            raw_score=total,
            level=RiskLevel.from_score(total),
            factors=tuple(factors),
            risk_type=risk_type,
            title=title,
            description=description,
        )

    @staticmethod
    def _categorize(matched: List[RiskType]) -> Tuple[Optional[RiskType], str, str]:
        if not matched:
            return None, "", ""
        # matched is built in priority order
        risk_type = matched[0]
        title, description = RISK_TYPE_TEXT[risk_type]
        return risk_type, title, description

    # ─────────────────────────────────────────────────────────────
    # Runtime updates
    # ─────────────────────────────────────────────────────────────

    def update_blacklist(self, address: str) -> None:
        self._blacklist.add(address)

    def remove_from_blacklist(self, address: str) -> None:
        self._blacklist.discard(address)

    def is_blacklisted(self, address: str) -> bool:
        return self._blacklist.contains(address)

    def add_suspicious_contract(self, address: str) -> None:
        self._suspicious.add(address)

    def set_high_value_threshold(self, threshold_wei: int) -> None:
        if threshold_wei < 0:
            raise ValueError("threshold_wei must be >= 0")
        self.config = replace(self.config, high_value_threshold_wei=threshold_wei)
        logger.info(f"High value threshold set to {threshold_wei} wei")

    def get_stats(self) -> dict:
        return {
            "blacklist_size": len(self._blacklist),
            "suspicious_contracts": len(self._suspicious),
            **self.config.to_dict(),
        }
