"""
Storage - Address Statistics Aggregator.

============================================================
PURPOSE
============================================================
Maintains incremental per-address profiles in the shared
key-value store. Profiles are never recomputed from scratch.

============================================================
CONCURRENCY
============================================================
Every field is updated with its own atomic primitive:
- counts      -> HINCRBY
- volumes     -> exact big-integer add (server-side script)
- max tx      -> server-side big-integer compare-and-set (max)
- first_seen  -> server-side compare-and-set (min)
- last_seen   -> server-side compare-and-set (max)

Concurrent writers to the same address therefore never lose
updates. The average is derived on read from merged totals.

Redelivery of the same transaction counts it again (bounded
over-count under at-least-once delivery). Callers that need
exactly-once counting gate update() behind the dedup cache.

============================================================
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from chain_ingestion.models import Block, Transaction
from core.constants import ADDRESS_STATS_KEY, HIGH_RISK_TX_KEY, LATEST_BLOCK_KEY
from storage.kv_store import KeyValueStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AddressProfile:
    """Merged view of one address on one network."""

    address: str
    network: str
    first_seen: Optional[int] = None
    last_seen: Optional[int] = None
    sent_count: int = 0
    received_count: int = 0
    sent_volume: int = 0
    received_volume: int = 0
    max_single_tx: int = 0
    suspicious_count: int = 0

    @property
    def total_count(self) -> int:
        return self.sent_count + self.received_count

    @property
    def avg_tx_value(self) -> float:
        """Derived average over everything sent and received."""
        if self.total_count == 0:
            return 0.0
        return (self.sent_volume + self.received_volume) / self.total_count

    @classmethod
    def from_hash(cls, address: str, network: str, data: Dict[str, str]) -> "AddressProfile":
        def _int(name: str) -> Optional[int]:
            raw = data.get(name)
            return int(float(raw)) if raw is not None else None

        return cls(
            address=address,
            network=network,
            first_seen=_int("first_seen"),
            last_seen=_int("last_seen"),
            sent_count=int(data.get("sent_count", 0)),
            received_count=int(data.get("received_count", 0)),
            sent_volume=int(data.get("sent_volume", 0)),
            received_volume=int(data.get("received_volume", 0)),
            max_single_tx=int(data.get("max_single_tx", 0)),
            suspicious_count=int(data.get("suspicious_count", 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "network": self.network,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "sent_count": self.sent_count,
            "received_count": self.received_count,
            # Wei as strings: JSON consumers lose precision above 2**53
            "sent_volume": str(self.sent_volume),
            "received_volume": str(self.received_volume),
            "max_single_tx": str(self.max_single_tx),
            "avg_tx_value": self.avg_tx_value,
            "suspicious_count": self.suspicious_count,
        }


def _unix(timestamp: Any) -> int:
    if isinstance(timestamp, datetime):
        return int(timestamp.timestamp())
    return int(timestamp)


class StatsAggregator:
    """
    Incremental address statistics.

    Usage:
        aggregator = StatsAggregator(store)
        await aggregator.record_transaction(tx)
        profile = await aggregator.get_profile(tx.from_address, tx.network)
    """

    def __init__(self, store: KeyValueStore, high_risk_retention: int = 10_000) -> None:
        self._store = store
        self._high_risk_retention = high_risk_retention

    async def update(
        self,
        address: str,
        network: str,
        tx_value: int,
        is_sender: bool,
        timestamp: Any,
    ) -> None:
        """Merge one transaction into an address profile."""
        if not address:
            return
        key = ADDRESS_STATS_KEY.format(network=network, address=address.lower())
        ts = _unix(timestamp)
        direction = "sent" if is_sender else "received"

        await asyncio.gather(
            self._store.hincrby(key, f"{direction}_count", 1),
            self._store.hincrby_big(key, f"{direction}_volume", int(tx_value)),
            self._store.hset_max_big(key, "max_single_tx", int(tx_value)),
            self._store.hset_min(key, "first_seen", ts),
            self._store.hset_max(key, "last_seen", ts),
        )

    async def record_transaction(self, tx: Transaction) -> None:
        """Update both sides of a transaction."""
        await self.update(tx.from_address, tx.network, tx.value, True, tx.timestamp)
        if tx.to_address:
            await self.update(tx.to_address, tx.network, tx.value, False, tx.timestamp)

    async def record_suspicious(self, address: str, network: str) -> int:
        key = ADDRESS_STATS_KEY.format(network=network, address=address.lower())
        return await self._store.hincrby(key, "suspicious_count", 1)

    async def get_profile(self, address: str, network: str) -> AddressProfile:
        address = address.lower()
        data = await self._store.hgetall(ADDRESS_STATS_KEY.format(network=network, address=address))
        return AddressProfile.from_hash(address, network, data)

    # ─────────────────────────────────────────────────────────────
    # Network-level records
    # ─────────────────────────────────────────────────────────────

    async def update_latest_block(self, block: Block) -> None:
        """Last write wins on the block hash."""
        await self._store.hset(
            LATEST_BLOCK_KEY.format(network=block.network),
            {
                "number": block.number,
                "hash": block.hash,
                "timestamp": _unix(block.timestamp),
                "tx_count": block.tx_count,
            },
        )

    async def get_latest_block(self, network: str) -> Dict[str, str]:
        return await self._store.hgetall(LATEST_BLOCK_KEY.format(network=network))

    async def record_high_risk(self, tx: Transaction, risk: Dict[str, Any]) -> None:
        """Index a high-risk transaction by timestamp."""
        key = HIGH_RISK_TX_KEY.format(network=tx.network)
        member = json.dumps({
            "hash": tx.hash,
            "from": tx.from_address,
            "to": tx.to_address,
            "value": str(tx.value),
            "block_number": tx.block_number,
            **risk,
        }, sort_keys=True)
        await self._store.zadd(key, member, _unix(tx.timestamp))
        await self._store.ztrim(key, self._high_risk_retention)

    async def get_high_risk(self, network: str, limit: int = 50) -> List[Dict[str, Any]]:
        members = await self._store.zrevrange(HIGH_RISK_TX_KEY.format(network=network), 0, limit - 1)
        return [json.loads(m) for m in members]
