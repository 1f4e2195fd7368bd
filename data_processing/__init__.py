"""
Data Processing Package.

This package gates normalized transactions before risk
scoring and aggregation.

Main modules:
- types: Filter reasons, rules and results
- deduplicator: Hash-window dedup over the shared store
- filter_engine: The transaction filter
"""

from .types import FilterReason, FilterRules, FilterResult, FilterStats
from .deduplicator import TransactionDeduplicator
from .filter_engine import FilterEngine

__all__ = [
    "FilterReason",
    "FilterRules",
    "FilterResult",
    "FilterStats",
    "TransactionDeduplicator",
    "FilterEngine",
]
