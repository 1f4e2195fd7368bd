"""
Data Processing - Filter Engine.

============================================================
PURPOSE
============================================================
Decides, deterministically, whether a transaction is worth
risk scoring, statistics and publishing.

============================================================
RULES
============================================================
1. Sender or recipient in the include list
   -> pass immediately with a small positive pre-score,
      redeliveries included (a dedup hit does not reject it)
2. Otherwise every predicate is evaluated (no short circuit)
   and each failing one adds its reason code, in this order:
   - below_min_value
   - excluded_contract
   - zero_value_non_contract
   - failed_transaction
   - empty_transaction
   - spam_transaction
   - duplicate_transaction
3. Pass iff no reason was recorded

should_process() is pure given the rules and the include /
exclude sets. The sets can be changed at runtime; each change
swaps in a new immutable FilterRules so in-flight evaluations
always see one consistent snapshot.

============================================================
USAGE
============================================================
    engine = FilterEngine(FilterRules.build(min_value_wei=10**15))
    result = engine.should_process(tx)
    if not result.should_process:
        print(result.reasons)

============================================================
"""

import logging
from dataclasses import replace
from typing import Any, Dict, Optional

from chain_ingestion.models import Transaction
from data_processing.deduplicator import TransactionDeduplicator
from data_processing.types import FilterReason, FilterResult, FilterRules, FilterStats


logger = logging.getLogger(__name__)


class FilterEngine:
    """
    Transaction gate ahead of risk scoring.

    ============================================================
    RESPONSIBILITIES
    ============================================================
    1. Evaluate filter predicates (pure)
    2. Consult the dedup window (evaluate() only)
    3. Maintain runtime-adjustable include / exclude sets
    4. Keep observability counters
    ============================================================
    """

    def __init__(
        self,
        rules: Optional[FilterRules] = None,
        deduplicator: Optional[TransactionDeduplicator] = None,
    ) -> None:
        self._rules = rules or FilterRules()
        self._deduplicator = deduplicator
        self._stats = FilterStats()

    @property
    def rules(self) -> FilterRules:
        return self._rules

    def should_process(self, tx: Transaction, is_duplicate: bool = False) -> FilterResult:
        """
        Evaluate every predicate for a transaction.

        Args:
            tx: Normalized transaction
            is_duplicate: Whether the dedup window has already seen it

        Returns:
            FilterResult (pure function of inputs and current rules)
        """
        rules = self._rules

        if (
            tx.from_address.lower() in rules.include_addresses
            or (tx.to_address and tx.to_address.lower() in rules.include_addresses)
        ):
            return FilterResult(should_process=True, score=rules.include_bonus)

        reasons = []

        if tx.value < rules.min_value_wei:
            reasons.append(FilterReason.BELOW_MIN_VALUE.value)

        if tx.to_address and tx.to_address.lower() in rules.exclude_contracts:
            reasons.append(FilterReason.EXCLUDED_CONTRACT.value)

        if tx.value == 0 and not tx.is_contract_call:
            reasons.append(FilterReason.ZERO_VALUE_NON_CONTRACT.value)

        if tx.status == 0:
            reasons.append(FilterReason.FAILED_TRANSACTION.value)

        if not tx.to_address and tx.input_size == 0:
            reasons.append(FilterReason.EMPTY_TRANSACTION.value)

        if tx.gas_price < rules.min_gas_price_wei or tx.gas < rules.min_gas_limit:
            reasons.append(FilterReason.SPAM_TRANSACTION.value)

        if is_duplicate:
            reasons.append(FilterReason.DUPLICATE_TRANSACTION.value)

        return FilterResult(should_process=not reasons, reasons=tuple(reasons))

    async def evaluate(self, tx: Transaction) -> FilterResult:
        """Check the dedup window, then apply should_process()."""
        is_duplicate = False
        if self._deduplicator is not None:
            is_duplicate = await self._deduplicator.is_duplicate(tx.network, tx.hash)

        result = self.should_process(tx, is_duplicate=is_duplicate)
        self._stats.record(result, included=result.should_process and result.score > 0)
        return result

    # ─────────────────────────────────────────────────────────────
    # Runtime rule updates
    # ─────────────────────────────────────────────────────────────

    def add_excluded_contract(self, address: str) -> None:
        self._rules = replace(
            self._rules,
            exclude_contracts=self._rules.exclude_contracts | {address.lower()},
        )
        logger.info(f"Excluded contract added: {address.lower()}")

    def remove_excluded_contract(self, address: str) -> None:
        self._rules = replace(
            self._rules,
            exclude_contracts=self._rules.exclude_contracts - {address.lower()},
        )
        logger.info(f"Excluded contract removed: {address.lower()}")

    def add_included_address(self, address: str) -> None:
        self._rules = replace(
            self._rules,
            include_addresses=self._rules.include_addresses | {address.lower()},
        )
        logger.info(f"Included address added: {address.lower()}")

    def remove_included_address(self, address: str) -> None:
        self._rules = replace(
            self._rules,
            include_addresses=self._rules.include_addresses - {address.lower()},
        )
        logger.info(f"Included address removed: {address.lower()}")

    def set_min_value_threshold(self, min_value_wei: int) -> None:
        if min_value_wei < 0:
            raise ValueError("min_value_wei must be >= 0")
        self._rules = replace(self._rules, min_value_wei=min_value_wei)
        logger.info(f"Minimum value threshold set to {min_value_wei} wei")

    def get_filter_stats(self) -> Dict[str, Any]:
        return {
            "min_value_wei": str(self._rules.min_value_wei),
            "excluded_contracts": len(self._rules.exclude_contracts),
            "included_addresses": len(self._rules.include_addresses),
            "dedup_enabled": self._deduplicator is not None,
            **self._stats.to_dict(),
        }
