"""
Tests for the NetworkConnector state machine.

Uses ScriptedConnector so only the base class logic
(timeouts, error accounting, reconnection) is exercised.
"""

import pytest

from chain_ingestion.models import ConnectorStatus
from core.exceptions import (
    ChainIdMismatchError,
    ConnectorClosedError,
    RpcTimeoutError,
    TransportDisconnectedError,
)
from monitoring.metrics import MetricsRecorder

from conftest import ScriptedConnector, fast_settings, network_settings


@pytest.fixture
def metrics():
    return MetricsRecorder()


@pytest.fixture
def connector(metrics):
    return ScriptedConnector(network_settings(), metrics=metrics)


class TestConnect:
    """Initial connection and chain id validation."""

    @pytest.mark.asyncio
    async def test_connect_sets_connected(self, connector, metrics):
        await connector.connect()

        assert connector.status == ConnectorStatus.CONNECTED
        assert connector.snapshot().is_healthy
        assert metrics.get_gauge("connection_status", "ethereum") == "connected"

    @pytest.mark.asyncio
    async def test_chain_id_mismatch(self, metrics):
        connector = ScriptedConnector(network_settings(chain_id=1), metrics=metrics, reported_chain_id=56)

        with pytest.raises(ChainIdMismatchError) as exc:
            await connector.connect()

        assert exc.value.expected == 1
        assert exc.value.actual == 56
        assert connector.status != ConnectorStatus.CONNECTED
        assert metrics.get_counter("errors_total", "ethereum", "configuration") == 1

    @pytest.mark.asyncio
    async def test_unreachable_endpoint(self, connector):
        connector.down = True

        with pytest.raises(TransportDisconnectedError):
            await connector.connect()

        assert connector.status == ConnectorStatus.DEGRADED
        assert connector.snapshot().error_count == 1

    @pytest.mark.asyncio
    async def test_call_before_connect_rejected(self, connector, metrics):
        with pytest.raises(TransportDisconnectedError):
            await connector.latest_block_number()

        assert metrics.get_counter("errors_total", "ethereum", "transient") == 1
        assert connector.snapshot().error_count == 1
        assert connector.status == ConnectorStatus.DISCONNECTED


class TestCalls:
    """RPC calls update the health state."""

    @pytest.mark.asyncio
    async def test_failure_degrades_then_success_recovers(self, connector):
        connector.head = 42
        await connector.connect()

        connector.down = True
        with pytest.raises(TransportDisconnectedError):
            await connector.latest_block_number()
        assert connector.status == ConnectorStatus.DEGRADED
        assert connector.snapshot().is_healthy

        connector.down = False
        assert await connector.latest_block_number() == 42
        assert connector.status == ConnectorStatus.CONNECTED
        assert connector.snapshot().consecutive_errors == 0
        assert connector.snapshot().latest_block == 42

    @pytest.mark.asyncio
    async def test_unhealthy_after_consecutive_failures(self, connector):
        await connector.connect()
        connector.down = True

        for _ in range(3):
            with pytest.raises(TransportDisconnectedError):
                await connector.latest_block_number()

        snapshot = connector.snapshot()
        assert snapshot.consecutive_errors == 3
        assert not snapshot.is_healthy
        assert snapshot.last_error is not None

    @pytest.mark.asyncio
    async def test_call_timeout(self):
        connector = ScriptedConnector(network_settings(), settings=fast_settings(call_timeout=0.05))
        await connector.connect()
        connector.hang = True

        with pytest.raises(RpcTimeoutError) as exc:
            await connector.latest_block_number()

        assert exc.value.method == "eth_blockNumber"
        assert connector.status == ConnectorStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_missing_block_returns_none(self, connector):
        connector.head = 5
        await connector.connect()

        assert await connector.block_by_number(6) is None
        assert (await connector.block_by_number(5))["number"] == hex(5)


class TestHealthCycle:
    """Background reconnection."""

    @pytest.mark.asyncio
    async def test_degraded_connector_reconnects(self, connector):
        await connector.connect()
        connector.down = True
        with pytest.raises(TransportDisconnectedError):
            await connector.latest_block_number()

        assert await connector.run_health_cycle() is False

        connector.down = False
        assert await connector.run_health_cycle() is True
        assert connector.status == ConnectorStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_health_check_detects_chain_switch(self, connector):
        await connector.connect()
        connector.reported_chain_id = 137

        assert await connector.run_health_cycle() is False
        assert connector.status == ConnectorStatus.DEGRADED


class TestClose:
    """close() is terminal."""

    @pytest.mark.asyncio
    async def test_close_is_terminal(self, connector):
        await connector.connect()
        await connector.start_health_monitoring()

        await connector.close()

        assert connector.status == ConnectorStatus.DISCONNECTED
        assert connector.is_closed
        with pytest.raises(ConnectorClosedError):
            await connector.latest_block_number()
        with pytest.raises(ConnectorClosedError):
            await connector.connect()
        assert await connector.reconnect() is False

    @pytest.mark.asyncio
    async def test_context_manager(self, connector):
        async with connector as conn:
            assert conn.status == ConnectorStatus.CONNECTED
        assert connector.is_closed
