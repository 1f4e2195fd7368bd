"""
Chain Ingestion Models - Canonical block/transaction model and connector state.

Everything downstream of the Normalizer (filtering, risk scoring,
statistics, publishing) consumes these types only, never raw
chain-client objects.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class ConnectorStatus(Enum):
    """Lifecycle state of a network connector."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"


class SourceKind(Enum):
    """How new heads are observed for a network."""
    PUSH = "push"
    POLL = "poll"


# ─────────────────────────────────────────────────────────────
# Canonical entities
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Transaction:
    """
    Normalized transaction - STRICT schema.

    Immutable once produced by the Normalizer. Addresses are
    lowercase hex; a missing recipient is the empty string.
    """
    hash: str
    network: str
    block_number: int
    from_address: str
    to_address: str
    value: int
    gas: int
    gas_price: int
    timestamp: datetime

    block_hash: str = ""
    transaction_index: int = 0
    nonce: int = 0
    input_data: str = "0x"
    gas_used: int = 0
    status: int = 1
    tx_type: int = 0
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    logs_count: int = 0

    is_contract_call: bool = False
    is_token_transfer: bool = False
    is_contract_creation: bool = False
    contract_address: str = ""

    @property
    def input_size(self) -> int:
        """Input length in bytes."""
        data = self.input_data[2:] if self.input_data.startswith("0x") else self.input_data
        return len(data) // 2

    @property
    def fee_ceiling(self) -> int:
        """gas limit * gas price, the maximum fee the sender offered."""
        return self.gas * self.gas_price

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization (big ints as strings)."""
        return {
            "hash": self.hash,
            "network": self.network,
            "block_number": self.block_number,
            "block_hash": self.block_hash,
            "transaction_index": self.transaction_index,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "value": str(self.value),
            "gas": self.gas,
            "gas_price": str(self.gas_price),
            "gas_used": self.gas_used,
            "nonce": self.nonce,
            "input_data": self.input_data,
            "status": self.status,
            "tx_type": self.tx_type,
            "max_fee_per_gas": str(self.max_fee_per_gas) if self.max_fee_per_gas is not None else None,
            "max_priority_fee_per_gas": (
                str(self.max_priority_fee_per_gas)
                if self.max_priority_fee_per_gas is not None else None
            ),
            "logs_count": self.logs_count,
            "is_contract_call": self.is_contract_call,
            "is_token_transfer": self.is_token_transfer,
            "is_contract_creation": self.is_contract_creation,
            "contract_address": self.contract_address,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class Block:
    """Normalized block with its normalized transactions."""
    number: int
    hash: str
    parent_hash: str
    timestamp: datetime
    network: str
    gas_used: int = 0
    gas_limit: int = 0
    miner: str = ""
    difficulty: int = 0
    size: int = 0
    base_fee_per_gas: Optional[int] = None
    transactions: tuple[Transaction, ...] = ()

    @property
    def tx_count(self) -> int:
        return len(self.transactions)

    def to_dict(self) -> dict[str, Any]:
        """Block header plus transaction hashes (bodies travel on their own topic)."""
        return {
            "number": self.number,
            "hash": self.hash,
            "parent_hash": self.parent_hash,
            "timestamp": self.timestamp.isoformat(),
            "network": self.network,
            "gas_used": self.gas_used,
            "gas_limit": self.gas_limit,
            "miner": self.miner,
            "difficulty": str(self.difficulty),
            "size": self.size,
            "base_fee_per_gas": str(self.base_fee_per_gas) if self.base_fee_per_gas is not None else None,
            "tx_count": self.tx_count,
            "transactions": [tx.hash for tx in self.transactions],
        }


# ─────────────────────────────────────────────────────────────
# Push notifications
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BlockHeader:
    """New-head notification from a push subscription or a poll."""
    network: str
    number: int
    hash: str = ""
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class LogEvent:
    """Contract log delivered by a logs subscription."""
    network: str
    address: str
    topics: tuple[str, ...]
    data: str
    block_number: int
    tx_hash: str
    log_index: int = 0
    removed: bool = False


@dataclass(frozen=True)
class LogFilter:
    """eth_subscribe("logs") filter."""
    addresses: tuple[str, ...] = ()
    topics: tuple[Optional[str], ...] = ()

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if self.addresses:
            params["address"] = list(self.addresses)
        if self.topics:
            params["topics"] = list(self.topics)
        return params


# ─────────────────────────────────────────────────────────────
# Connector state
# ─────────────────────────────────────────────────────────────

@dataclass
class ConnectorState:
    """
    Mutable connector state, owned by exactly one NetworkConnector.

    Status surfaces receive a frozen copy via snapshot().
    """
    network: str
    chain_id: int
    status: ConnectorStatus = ConnectorStatus.DISCONNECTED
    last_processed: Optional[int] = None
    latest_block: Optional[int] = None
    consecutive_errors: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None
    last_update_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    unhealthy_after_failures: int = 3

    @property
    def connected(self) -> bool:
        return self.status == ConnectorStatus.CONNECTED

    @property
    def is_healthy(self) -> bool:
        """Connected, or degraded but still below the unhealthy threshold."""
        if self.status == ConnectorStatus.CONNECTED:
            return True
        return (
            self.status == ConnectorStatus.DEGRADED
            and self.consecutive_errors < self.unhealthy_after_failures
        )

    def snapshot(self) -> "ConnectorSnapshot":
        return ConnectorSnapshot(
            network=self.network,
            chain_id=self.chain_id,
            status=self.status,
            connected=self.connected,
            is_healthy=self.is_healthy,
            last_processed=self.last_processed,
            latest_block=self.latest_block,
            consecutive_errors=self.consecutive_errors,
            error_count=self.error_count,
            last_error=self.last_error,
            last_update_time=self.last_update_time,
        )


@dataclass(frozen=True)
class ConnectorSnapshot:
    """Read-only view of a connector, safe to hand to other tasks."""
    network: str
    chain_id: int
    status: ConnectorStatus
    connected: bool
    is_healthy: bool
    last_processed: Optional[int]
    latest_block: Optional[int]
    consecutive_errors: int
    error_count: int
    last_error: Optional[str]
    last_update_time: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.network,
            "chain_id": self.chain_id,
            "status": self.status.value,
            "connected": self.connected,
            "is_healthy": self.is_healthy,
            "latest_block": self.latest_block,
            "last_processed": self.last_processed,
            "consecutive_errors": self.consecutive_errors,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "last_update_time": self.last_update_time.isoformat(),
        }
