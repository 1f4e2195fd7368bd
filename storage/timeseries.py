"""
Storage - Block & Transaction Time Series.

============================================================
PURPOSE
============================================================
Keeps one point per processed block and per accepted
transaction, scored by chain timestamp, so the status API can
answer windowed questions:

- transaction_stats(network, window)   count / value / gas
- block_stats(network, window)         count / range / block time
- transaction_volume(network, window)  value summed per bucket

============================================================
STORAGE
============================================================
Points live in sorted sets `timeseries:{measurement}:{network}`
(measurement = blocks | transactions), member = canonical JSON
of the point, score = unix timestamp. A re-processed block or
redelivered transaction produces the identical member, so
writes are idempotent. Points older than the retention window
(relative to the newest write) are trimmed on write.

============================================================
IMPLEMENTATIONS
============================================================
- KeyValueTimeSeriesStore: on the shared KeyValueStore (Redis)
- InMemoryTimeSeriesStore: process-local, lost on restart

============================================================
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from chain_ingestion.models import Block, Transaction
from core.constants import TIMESERIES_KEY
from storage.kv_store import KeyValueStore


logger = logging.getLogger(__name__)

BLOCKS = "blocks"
TRANSACTIONS = "transactions"

Point = Dict[str, Any]


def _unix(timestamp: Any) -> int:
    if isinstance(timestamp, datetime):
        return int(timestamp.timestamp())
    return int(timestamp)


def block_point(block: Block) -> Point:
    """Fields recorded for one block."""
    point: Point = {
        "number": block.number,
        "hash": block.hash,
        "timestamp": _unix(block.timestamp),
        "tx_count": block.tx_count,
        "gas_used": block.gas_used,
        "gas_limit": block.gas_limit,
        "size": block.size,
        "miner": block.miner,
    }
    if block.base_fee_per_gas is not None:
        point["base_fee"] = str(block.base_fee_per_gas)
    return point


def transaction_point(tx: Transaction) -> Point:
    """Fields recorded for one accepted transaction."""
    point: Point = {
        "hash": tx.hash,
        "block_number": tx.block_number,
        "timestamp": _unix(tx.timestamp),
        "from": tx.from_address,
        "to": tx.to_address,
        "value": str(tx.value),
        "gas": tx.gas,
        "gas_price": str(tx.gas_price),
        "gas_used": tx.gas_used,
        "status": tx.status,
        "tx_type": tx.tx_type,
        "is_contract_call": tx.is_contract_call,
        "is_token_transfer": tx.is_token_transfer,
    }
    if tx.max_fee_per_gas is not None:
        point["max_fee_per_gas"] = str(tx.max_fee_per_gas)
    if tx.max_priority_fee_per_gas is not None:
        point["max_priority_fee_per_gas"] = str(tx.max_priority_fee_per_gas)
    return point


class TimeSeriesStore(ABC):
    """
    Point sink plus windowed aggregate queries.

    Subclasses only store and range-read points; every
    aggregate is computed here from the points in the window.

    Usage:
        series = KeyValueTimeSeriesStore(store)
        await series.write_block(block)
        stats = await series.block_stats("ethereum", window_seconds=3600)
    """

    def __init__(self, retention_seconds: int = 7 * 86_400) -> None:
        self._retention = retention_seconds

    @property
    def retention_seconds(self) -> int:
        return self._retention

    # ─────────────────────────────────────────────────────────────
    # Backend hooks
    # ─────────────────────────────────────────────────────────────

    @abstractmethod
    async def _append(self, measurement: str, network: str, point: Point) -> None:
        """Store a point; identical points collapse into one."""

    @abstractmethod
    async def _range(self, measurement: str, network: str, since: float, until: float) -> List[Point]:
        """Points with since <= timestamp <= until, oldest first."""

    # ─────────────────────────────────────────────────────────────
    # Writes
    # ─────────────────────────────────────────────────────────────

    async def write_block(self, block: Block) -> None:
        await self._append(BLOCKS, block.network, block_point(block))

    async def write_transaction(self, tx: Transaction) -> None:
        await self._append(TRANSACTIONS, tx.network, transaction_point(tx))

    # ─────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────

    async def _window(
        self,
        measurement: str,
        network: str,
        window_seconds: int,
        now: Optional[float],
    ) -> List[Point]:
        until = time.time() if now is None else now
        return await self._range(measurement, network, until - window_seconds, until)

    async def transaction_stats(
        self,
        network: str,
        window_seconds: int = 3600,
        now: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Count, value and gas figures of accepted transactions in the window."""
        points = await self._window(TRANSACTIONS, network, window_seconds, now)
        count = len(points)
        total_value = sum(int(p["value"]) for p in points)
        gas_prices = [int(p["gas_price"]) for p in points]
        return {
            "network": network,
            "window_seconds": window_seconds,
            "count": count,
            "total_value": str(total_value),
            "avg_value": str(total_value // count) if count else "0",
            "avg_gas_price": str(sum(gas_prices) // count) if count else "0",
            "contract_calls": sum(1 for p in points if p.get("is_contract_call")),
            "token_transfers": sum(1 for p in points if p.get("is_token_transfer")),
            "failed": sum(1 for p in points if p.get("status") == 0),
        }

    async def block_stats(
        self,
        network: str,
        window_seconds: int = 3600,
        now: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Count, block range and average block time in the window."""
        points = await self._window(BLOCKS, network, window_seconds, now)
        count = len(points)
        stats: Dict[str, Any] = {
            "network": network,
            "window_seconds": window_seconds,
            "count": count,
            "first_block": None,
            "last_block": None,
            "total_transactions": sum(p["tx_count"] for p in points),
            "avg_tx_count": 0.0,
            "avg_gas_used": 0.0,
            "avg_block_time_seconds": None,
        }
        if not points:
            return stats

        numbers = [p["number"] for p in points]
        stats["first_block"] = min(numbers)
        stats["last_block"] = max(numbers)
        stats["avg_tx_count"] = stats["total_transactions"] / count
        stats["avg_gas_used"] = sum(p["gas_used"] for p in points) / count

        span_blocks = stats["last_block"] - stats["first_block"]
        if span_blocks > 0:
            by_number = sorted(points, key=lambda p: p["number"])
            span_seconds = by_number[-1]["timestamp"] - by_number[0]["timestamp"]
            stats["avg_block_time_seconds"] = span_seconds / span_blocks
        return stats

    async def transaction_volume(
        self,
        network: str,
        window_seconds: int = 86_400,
        bucket_seconds: int = 3600,
        now: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        """Transferred value summed per time bucket, oldest bucket first."""
        if bucket_seconds <= 0:
            raise ValueError("bucket_seconds must be positive")
        points = await self._window(TRANSACTIONS, network, window_seconds, now)

        buckets: Dict[int, List[int]] = defaultdict(list)
        for p in points:
            start = p["timestamp"] - p["timestamp"] % bucket_seconds
            buckets[start].append(int(p["value"]))

        return [
            {"bucket_start": start, "count": len(values), "value": str(sum(values))}
            for start, values in sorted(buckets.items())
        ]

    async def close(self) -> None:
        return None


class KeyValueTimeSeriesStore(TimeSeriesStore):
    """Sorted sets on the shared key-value store."""

    def __init__(self, store: KeyValueStore, retention_seconds: int = 7 * 86_400) -> None:
        super().__init__(retention_seconds)
        self._store = store

    async def _append(self, measurement: str, network: str, point: Point) -> None:
        key = TIMESERIES_KEY.format(measurement=measurement, network=network)
        timestamp = point["timestamp"]
        await self._store.zadd(key, json.dumps(point, sort_keys=True), timestamp)
        await self._store.zremrangebyscore(key, float("-inf"), timestamp - self._retention - 1)

    async def _range(self, measurement: str, network: str, since: float, until: float) -> List[Point]:
        key = TIMESERIES_KEY.format(measurement=measurement, network=network)
        members = await self._store.zrangebyscore(key, since, until)
        return [json.loads(m) for m in members]


class InMemoryTimeSeriesStore(TimeSeriesStore):
    """Process-local points (dry-run, tests)."""

    def __init__(self, retention_seconds: int = 7 * 86_400) -> None:
        super().__init__(retention_seconds)
        self._series: Dict[Tuple[str, str], Dict[str, Point]] = defaultdict(dict)

    async def _append(self, measurement: str, network: str, point: Point) -> None:
        series = self._series[(measurement, network)]
        series[json.dumps(point, sort_keys=True)] = point
        cutoff = point["timestamp"] - self._retention
        for member in [m for m, p in series.items() if p["timestamp"] < cutoff]:
            del series[member]

    async def _range(self, measurement: str, network: str, since: float, until: float) -> List[Point]:
        points = [
            p for p in self._series.get((measurement, network), {}).values()
            if since <= p["timestamp"] <= until
        ]
        return sorted(points, key=lambda p: p["timestamp"])


def parse_window(value: str) -> int:
    """
    Parse a duration like "90s", "15m", "1h" or "7d" into seconds.

    Raises:
        ValueError: Unrecognized or non-positive duration
    """
    units = {"s": 1, "m": 60, "h": 3600, "d": 86_400}
    text = value.strip().lower()
    if not text:
        raise ValueError("Empty duration")
    if text.isdigit():
        seconds = int(text)
    elif text[-1] in units and text[:-1].isdigit():
        seconds = int(text[:-1]) * units[text[-1]]
    else:
        raise ValueError(f"Invalid duration: {value!r}")
    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")
    return seconds
