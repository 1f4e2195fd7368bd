"""
Shared test fixtures.

============================================================
PURPOSE
============================================================
Offline stand-ins for the chain and the infrastructure:

- ScriptedConnector: NetworkConnector whose chain is a dict of
  generated blocks; can be taken down and brought back up
- ResettingSession: aiohttp session stand-in whose sockets fail
  with a connection reset on first write
- make_tx: canonical Transaction factory with sane defaults
- fast_connector_settings: millisecond timings for async tests

============================================================
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from chain_ingestion.connector import NetworkConnector
from chain_ingestion.models import Transaction
from core.config import ConnectorSettings, NetworkSettings


# 2023-11-14 22:13:20 UTC, outside the suspicious hours window
BASE_TIMESTAMP = 1_700_000_000

ONE_ETH = 10 ** 18
GWEI = 10 ** 9

SENDER = "0x1111111111111111111111111111111111111111"
RECIPIENT = "0x2222222222222222222222222222222222222222"


def fast_settings(**overrides: Any) -> ConnectorSettings:
    values = dict(
        health_check_interval=0.05,
        poll_interval=0.01,
        poll_jitter=0.0,
        reconnect_backoff=0.01,
        max_reconnect_backoff=0.05,
        call_timeout=1.0,
        unhealthy_after_failures=3,
        emit_interval=0.0,
        fetch_retry_backoff=0.01,
        max_fetch_retry_backoff=0.05,
    )
    values.update(overrides)
    return ConnectorSettings(**values)


def network_settings(name: str = "ethereum", chain_id: int = 1, **overrides: Any) -> NetworkSettings:
    return NetworkSettings(
        name=name,
        rpc_url=f"http://{name}.invalid:8545",
        chain_id=chain_id,
        **overrides,
    )


def raw_tx(
    tx_hash: str,
    block_number: int,
    sender: str = SENDER,
    to: Optional[str] = RECIPIENT,
    value: int = ONE_ETH,
    gas: int = 21_000,
    gas_price: int = 2 * GWEI,
    data: str = "0x",
) -> Dict[str, Any]:
    """JSON-RPC style transaction (hex quantities)."""
    return {
        "hash": tx_hash,
        "blockNumber": hex(block_number),
        "blockHash": "0x" + f"{block_number:064x}",
        "transactionIndex": "0x0",
        "from": sender,
        "to": to,
        "value": hex(value),
        "gas": hex(gas),
        "gasPrice": hex(gas_price),
        "nonce": "0x1",
        "input": data,
        "type": "0x0",
    }


def raw_block(number: int, transactions: List[Dict[str, Any]], timestamp: int = BASE_TIMESTAMP) -> Dict[str, Any]:
    return {
        "number": hex(number),
        "hash": "0x" + f"{number:064x}",
        "parentHash": "0x" + f"{max(number - 1, 0):064x}",
        "timestamp": hex(timestamp + number * 12),
        "gasUsed": hex(21_000 * len(transactions)),
        "gasLimit": hex(30_000_000),
        "miner": "0x" + "ab" * 20,
        "baseFeePerGas": hex(GWEI),
        "transactions": transactions,
    }


class ScriptedConnector(NetworkConnector):
    """
    Connector over a generated chain.

    Every block up to `head` exists and carries one 1 ETH
    transfer unless replaced through set_block(). Setting
    `down` makes every transport call fail like a dropped
    endpoint.
    """

    def __init__(
        self,
        network: NetworkSettings,
        settings: Optional[ConnectorSettings] = None,
        metrics: Optional[Any] = None,
        reported_chain_id: Optional[int] = None,
    ) -> None:
        super().__init__(network, settings or fast_settings(), metrics)
        self.reported_chain_id = network.chain_id if reported_chain_id is None else reported_chain_id
        self.head = 0
        self.down = False
        self.hang = False
        self.blocks: Dict[int, Dict[str, Any]] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.fetched: List[int] = []
        self.open_calls = 0

    def tx_hash(self, number: int) -> str:
        return "0x" + f"{self.chain_id:04x}{number:060x}"

    def set_block(self, number: int, transactions: List[Dict[str, Any]], **kwargs: Any) -> None:
        self.blocks[number] = raw_block(number, transactions, **kwargs)

    async def _check(self) -> None:
        if self.hang:
            await asyncio.sleep(3600)
        if self.down:
            raise ConnectionError(f"{self.name} endpoint down")

    async def _open(self) -> None:
        self.open_calls += 1
        await self._check()

    async def _close_transport(self) -> None:
        return None

    async def _fetch_chain_id(self) -> int:
        await self._check()
        return self.reported_chain_id

    async def _fetch_latest_block_number(self) -> int:
        await self._check()
        return self.head

    async def _fetch_block(self, number: int) -> Optional[Dict[str, Any]]:
        await self._check()
        if number > self.head:
            return None
        self.fetched.append(number)
        if number not in self.blocks:
            self.set_block(number, [raw_tx(self.tx_hash(number), number)])
        return self.blocks[number]

    async def _fetch_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        await self._check()
        return self.receipts.get(tx_hash, {"status": "0x1", "gasUsed": hex(21_000), "logs": []})


class ResettingWebSocket:
    """WebSocket whose peer resets the connection on first write."""

    def __init__(self) -> None:
        self.closed = False

    async def send_json(self, data: Any) -> None:
        raise ConnectionResetError("Connection reset by peer")

    async def close(self) -> None:
        self.closed = True


class ResettingSession:
    """Stand-in aiohttp session handing out ResettingWebSocket."""

    closed = False

    def __init__(self) -> None:
        self.sockets: List[ResettingWebSocket] = []

    async def ws_connect(self, url: str, **kwargs: Any) -> ResettingWebSocket:
        ws = ResettingWebSocket()
        self.sockets.append(ws)
        return ws


def make_tx(
    tx_hash: str = "0x" + "aa" * 32,
    network: str = "ethereum",
    block_number: int = 100,
    from_address: str = SENDER,
    to_address: str = RECIPIENT,
    value: int = ONE_ETH,
    gas: int = 21_000,
    gas_price: int = 2 * GWEI,
    timestamp: Optional[datetime] = None,
    **kwargs: Any,
) -> Transaction:
    return Transaction(
        hash=tx_hash,
        network=network,
        block_number=block_number,
        from_address=from_address,
        to_address=to_address,
        value=value,
        gas=gas,
        gas_price=gas_price,
        timestamp=timestamp or datetime.fromtimestamp(BASE_TIMESTAMP, tz=timezone.utc),
        **kwargs,
    )


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    """Poll `predicate` until true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


@pytest.fixture
def connector_settings() -> ConnectorSettings:
    return fast_settings()


@pytest.fixture
def scripted_connector() -> ScriptedConnector:
    return ScriptedConnector(network_settings())
