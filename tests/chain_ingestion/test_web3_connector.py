"""
Tests for the web3-backed connector.

AsyncWeb3 is replaced by a stand-in client so no node is needed.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from web3.exceptions import BlockNotFound, TransactionNotFound

from chain_ingestion.connector import Web3NetworkConnector
from chain_ingestion.models import ConnectorStatus
from core.exceptions import ChainIdMismatchError, TransportDisconnectedError

from conftest import fast_settings, network_settings, raw_block, raw_tx


class FakeEth:
    """Subset of AsyncEth used by the connector."""

    def __init__(self, chain_id=1, head=100):
        self._chain_id = chain_id
        self.head = head
        self.blocks = {}
        self.receipts = {}

    @property
    def chain_id(self):
        async def value():
            return self._chain_id
        return value()

    async def get_block_number(self):
        return self.head

    async def get_block(self, number, full_transactions=False):
        if number not in self.blocks:
            raise BlockNotFound(f"Block {number} not found")
        return self.blocks[number]

    async def get_transaction_receipt(self, tx_hash):
        if tx_hash not in self.receipts:
            raise TransactionNotFound(f"Transaction {tx_hash} not found")
        return self.receipts[tx_hash]


def fake_web3(eth, connected=True):
    w3 = MagicMock()
    w3.eth = eth
    w3.is_connected = AsyncMock(return_value=connected)
    w3.provider.disconnect = AsyncMock()
    return w3


class TestWeb3NetworkConnector:
    """Reads through AsyncWeb3."""

    @pytest.mark.asyncio
    async def test_reads(self):
        eth = FakeEth()
        eth.blocks[100] = raw_block(100, [raw_tx("0x" + "aa" * 32, 100)])
        eth.receipts["0x" + "aa" * 32] = {"status": 1, "gasUsed": 21_000}
        w3 = fake_web3(eth)

        with patch("chain_ingestion.connector.AsyncWeb3") as web3_class:
            web3_class.return_value = w3
            connector = Web3NetworkConnector(network_settings(), fast_settings())
            await connector.connect()

            assert connector.status == ConnectorStatus.CONNECTED
            assert await connector.latest_block_number() == 100
            assert (await connector.block_by_number(100))["number"] == hex(100)
            assert await connector.block_by_number(101) is None
            assert (await connector.transaction_receipt("0x" + "aa" * 32))["status"] == 1
            assert await connector.transaction_receipt("0x" + "bb" * 32) is None

            await connector.close()

        w3.middleware_onion.inject.assert_called_once()
        w3.provider.disconnect.assert_awaited_once()
        assert connector.supports_push is False

    @pytest.mark.asyncio
    async def test_unreachable_endpoint(self):
        with patch("chain_ingestion.connector.AsyncWeb3") as web3_class:
            web3_class.return_value = fake_web3(FakeEth(), connected=False)
            connector = Web3NetworkConnector(network_settings(), fast_settings())

            with pytest.raises(TransportDisconnectedError, match="unreachable"):
                await connector.connect()

        assert connector.status == ConnectorStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_wrong_chain(self):
        with patch("chain_ingestion.connector.AsyncWeb3") as web3_class:
            web3_class.return_value = fake_web3(FakeEth(chain_id=56))
            connector = Web3NetworkConnector(network_settings(chain_id=1), fast_settings())

            with pytest.raises(ChainIdMismatchError):
                await connector.connect()

    @pytest.mark.asyncio
    async def test_push_streams_use_subscription_client(self):
        async def heads(kind, params=None):
            yield {"number": "0x10", "hash": "0xabc", "timestamp": "0x5"}

        client = MagicMock()
        client.stream = heads
        client.close = AsyncMock()

        with patch("chain_ingestion.connector.AsyncWeb3") as web3_class:
            web3_class.return_value = fake_web3(FakeEth())
            connector = Web3NetworkConnector(
                network_settings(ws_url="ws://node.invalid"),
                fast_settings(),
                subscription_client=client,
            )
            await connector.connect()

            headers = [h async for h in connector.subscribe_heads()]
            await connector.close()

        assert connector.supports_push is True
        assert [h.number for h in headers] == [16]
        assert connector.snapshot().latest_block == 16
        client.close.assert_awaited_once()

    def test_ws_url_creates_subscription_client(self):
        connector = Web3NetworkConnector(network_settings(ws_url="ws://node.invalid"), fast_settings())
        assert connector.supports_push is True
