"""
Storage Package.

Shared key-value state of the pipeline.

Modules:
- kv_store: Redis-backed store (plus in-memory stand-in)
- checkpoint: per-network last processed block
- stats_aggregator: incremental per-address profiles
- timeseries: block / transaction points and windowed stats
"""

from .kv_store import KeyValueStore, RedisKeyValueStore, InMemoryKeyValueStore
from .checkpoint import CheckpointStore
from .stats_aggregator import AddressProfile, StatsAggregator
from .timeseries import InMemoryTimeSeriesStore, KeyValueTimeSeriesStore, TimeSeriesStore

__all__ = [
    "KeyValueStore",
    "RedisKeyValueStore",
    "InMemoryKeyValueStore",
    "CheckpointStore",
    "AddressProfile",
    "StatsAggregator",
    "TimeSeriesStore",
    "KeyValueTimeSeriesStore",
    "InMemoryTimeSeriesStore",
]
