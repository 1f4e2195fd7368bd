"""
Event Publishing - Outbound Messages.

============================================================
PURPOSE
============================================================
Wire records for the three outbound topics.

    transactions   key = tx hash
    blocks         key = block number
    alerts         key = alert id

Every message carries routing headers so consumers can
deduplicate or route without parsing the body:

    network, block_number, timestamp (unix), message_type

Blocks add tx_count; alerts add alert_type, alert_level and
risk_score.

============================================================
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Tuple

from chain_ingestion.models import Block, Transaction
from risk_scoring.types import Alert


MESSAGE_TYPE_TRANSACTION = "transaction"
MESSAGE_TYPE_BLOCK = "block"
MESSAGE_TYPE_ALERT = "alert"


@dataclass(frozen=True)
class OutboundMessage:
    """One record waiting for delivery."""

    topic: str
    key: str
    payload: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def message_type(self) -> str:
        return self.headers.get("message_type", "")

    def encode_value(self) -> bytes:
        return json.dumps(self.payload, separators=(",", ":"), default=str).encode("utf-8")

    def encode_key(self) -> bytes:
        return self.key.encode("utf-8")

    def encode_headers(self) -> List[Tuple[str, bytes]]:
        return [(k, str(v).encode("utf-8")) for k, v in self.headers.items()]


def _unix(timestamp: datetime) -> str:
    return str(int(timestamp.timestamp()))


def transaction_message(tx: Transaction, topic: str) -> OutboundMessage:
    return OutboundMessage(
        topic=topic,
        key=tx.hash,
        payload=tx.to_dict(),
        headers={
            "network": tx.network,
            "block_number": str(tx.block_number),
            "timestamp": _unix(tx.timestamp),
            "message_type": MESSAGE_TYPE_TRANSACTION,
        },
    )


def block_message(block: Block, topic: str) -> OutboundMessage:
    return OutboundMessage(
        topic=topic,
        key=str(block.number),
        payload=block.to_dict(),
        headers={
            "network": block.network,
            "block_number": str(block.number),
            "timestamp": _unix(block.timestamp),
            "message_type": MESSAGE_TYPE_BLOCK,
            "tx_count": str(block.tx_count),
        },
    )


def alert_message(alert: Alert, topic: str) -> OutboundMessage:
    return OutboundMessage(
        topic=topic,
        key=alert.id,
        payload=alert.to_dict(),
        headers={
            "network": alert.network,
            "block_number": str(alert.metadata.get("block_number", "")),
            "timestamp": _unix(alert.timestamp),
            "message_type": MESSAGE_TYPE_ALERT,
            "alert_type": alert.type.value,
            "alert_level": alert.level.value,
            "risk_score": f"{alert.risk_score:.2f}",
        },
    )
