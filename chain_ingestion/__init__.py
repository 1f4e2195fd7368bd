"""
Chain Ingestion Package.

Connects to EVM networks, follows their heads and turns raw
blocks into canonical Block / Transaction records.

Modules:
- models: canonical records and connector state
- connector: per-network RPC + push connection lifecycle
- subscriptions: eth_subscribe websocket client
- normalizer: raw JSON-RPC payloads -> canonical records
- ingester: block + receipt fetching
- block_source: ordered, gap-free block number driver
"""

from .models import (
    Block,
    BlockHeader,
    ConnectorSnapshot,
    ConnectorState,
    ConnectorStatus,
    LogEvent,
    LogFilter,
    SourceKind,
    Transaction,
)
from .normalizer import Normalizer
from .connector import NetworkConnector, Web3NetworkConnector
from .ingester import BlockIngester
from .block_source import BlockSource, PollSource, PushSource, create_head_input

__all__ = [
    "Block",
    "BlockHeader",
    "ConnectorSnapshot",
    "ConnectorState",
    "ConnectorStatus",
    "LogEvent",
    "LogFilter",
    "SourceKind",
    "Transaction",
    "Normalizer",
    "NetworkConnector",
    "Web3NetworkConnector",
    "BlockIngester",
    "BlockSource",
    "PollSource",
    "PushSource",
    "create_head_input",
]
