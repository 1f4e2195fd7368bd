"""
Event Publishing Package.

Delivers normalized transactions, blocks and risk alerts to the
outbound topics, at-least-once.
"""

from .messages import (
    OutboundMessage,
    transaction_message,
    block_message,
    alert_message,
    MESSAGE_TYPE_TRANSACTION,
    MESSAGE_TYPE_BLOCK,
    MESSAGE_TYPE_ALERT,
)
from .transport import Transport, KafkaTransport, InMemoryTransport
from .publisher import Publisher

__all__ = [
    "OutboundMessage",
    "transaction_message",
    "block_message",
    "alert_message",
    "MESSAGE_TYPE_TRANSACTION",
    "MESSAGE_TYPE_BLOCK",
    "MESSAGE_TYPE_ALERT",
    "Transport",
    "KafkaTransport",
    "InMemoryTransport",
    "Publisher",
]
