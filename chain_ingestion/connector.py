"""
Network Connector - One chain connection and its health state.

State machine:
    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTED    -> DEGRADED        (any RPC / stream error)
    DEGRADED     -> CONNECTED       (health monitor reconnect, with backoff)
    any          -> DISCONNECTED    (close(), terminal)

A connector never gives up while the process runs: after
`unhealthy_after_failures` consecutive failures it is reported
unhealthy but the health monitor keeps reconnecting.

All connectors MUST:
- Bound every call with the configured call timeout
- Only be driven by their own network task
- Expose state to others through snapshot() only
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from web3 import AsyncWeb3
from web3.exceptions import BlockNotFound, TransactionNotFound
from web3.middleware import ExtraDataToPOAMiddleware

from chain_ingestion.models import (
    BlockHeader,
    ConnectorSnapshot,
    ConnectorState,
    ConnectorStatus,
    LogEvent,
    LogFilter,
)
from chain_ingestion.subscriptions import EthSubscriptionClient
from core.config import ConnectorSettings, NetworkSettings
from core.exceptions import (
    ChainIdMismatchError,
    ConfigurationError,
    ConnectorClosedError,
    PipelineError,
    RpcTimeoutError,
    TransportDisconnectedError,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


class NetworkConnector(ABC):
    """
    Abstract base class for chain connectors.

    Subclasses implement the raw transport hooks:
    1. _open() / _close_transport() - Transport lifecycle
    2. _fetch_chain_id() / _fetch_latest_block_number()
    3. _fetch_block() / _fetch_receipt() - Return None when not found
    4. _stream() - Push subscription results (optional)

    The base class owns the state machine, timeouts, error
    accounting and the background health monitor.
    """

    def __init__(
        self,
        network: NetworkSettings,
        settings: Optional[ConnectorSettings] = None,
        metrics: Optional[Any] = None,
    ) -> None:
        self._network = network
        self._settings = settings or ConnectorSettings()
        self._metrics = metrics

        self._state = ConnectorState(
            network=network.name,
            chain_id=network.chain_id,
            unhealthy_after_failures=self._settings.unhealthy_after_failures,
        )
        self._closed = False
        self._reconnect_attempts = 0
        self._connect_lock = asyncio.Lock()
        self._health_task: Optional[asyncio.Task] = None

    # ─────────────────────────────────────────────────────────────
    # Transport hooks
    # ─────────────────────────────────────────────────────────────

    @abstractmethod
    async def _open(self) -> None:
        """Open the transport and verify it answers."""

    @abstractmethod
    async def _close_transport(self) -> None:
        """Release the transport (may be reopened by _open)."""

    @abstractmethod
    async def _fetch_chain_id(self) -> int:
        pass

    @abstractmethod
    async def _fetch_latest_block_number(self) -> int:
        pass

    @abstractmethod
    async def _fetch_block(self, number: int) -> Optional[Any]:
        """Raw block with full transactions, or None if not yet available."""

    @abstractmethod
    async def _fetch_receipt(self, tx_hash: str) -> Optional[Any]:
        """Raw receipt, or None if not yet available."""

    @property
    def supports_push(self) -> bool:
        """True when a push transport is configured."""
        return False

    def _stream(self, kind: str, params: Optional[dict[str, Any]] = None) -> AsyncIterator[Any]:
        raise ConfigurationError(
            "No push transport configured",
            network=self.name,
        )

    # ─────────────────────────────────────────────────────────────
    # Properties
    # ─────────────────────────────────────────────────────────────

    @property
    def name(self) -> str:
        return self._network.name

    @property
    def chain_id(self) -> int:
        return self._network.chain_id

    @property
    def status(self) -> ConnectorStatus:
        return self._state.status

    @property
    def is_closed(self) -> bool:
        return self._closed

    def snapshot(self) -> ConnectorSnapshot:
        """Read-only state for status reporting."""
        return self._state.snapshot()

    def mark_processed(self, block_number: int) -> None:
        """Record the last fully processed block (owned by the network task)."""
        self._state.last_processed = block_number
        self._state.last_update_time = datetime.now(timezone.utc)

    # ─────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """
        Open the transport and validate the chain id.

        Raises:
            ChainIdMismatchError: Endpoint serves another chain
            RpcTimeoutError / TransportDisconnectedError: Endpoint unreachable
        """
        self._ensure_open()
        async with self._connect_lock:
            if self._state.status == ConnectorStatus.CONNECTED:
                return

            self._set_status(ConnectorStatus.CONNECTING)
            timeout = self._settings.call_timeout

            try:
                await asyncio.wait_for(self._open(), timeout=timeout)
                chain_id = await asyncio.wait_for(self._fetch_chain_id(), timeout=timeout)
            except asyncio.TimeoutError as e:
                error = RpcTimeoutError("connect", timeout, network=self.name, original_error=e)
                self._on_error(error)
                raise error from e
            except PipelineError as e:
                self._on_error(e)
                raise
            except Exception as e:
                error = TransportDisconnectedError(
                    f"Connect failed: {e}",
                    network=self.name,
                    original_error=e,
                )
                self._on_error(error)
                raise error from e

            if chain_id != self.chain_id:
                error = ChainIdMismatchError(self.chain_id, chain_id, network=self.name)
                self._on_error(error)
                raise error

            self._reconnect_attempts = 0
            self._on_success()
            logger.info(f"[{self.name}] Connected (chain_id={chain_id})")

    async def reconnect(self) -> bool:
        """
        One reconnection attempt after the current backoff delay.

        Returns:
            True if the connector is CONNECTED afterwards
        """
        if self._closed:
            return False

        delay = min(
            self._settings.reconnect_backoff * (2 ** self._reconnect_attempts),
            self._settings.max_reconnect_backoff,
        )
        if delay > 0:
            logger.info(
                f"[{self.name}] Reconnecting in {delay:.1f}s "
                f"(attempt {self._reconnect_attempts + 1})"
            )
            await asyncio.sleep(delay)

        if self._closed:
            return False

        try:
            await self._close_transport()
        except Exception as e:
            logger.debug(f"[{self.name}] Ignoring transport close error: {e}")

        try:
            await self.connect()
        except PipelineError as e:
            self._reconnect_attempts += 1
            logger.warning(f"[{self.name}] Reconnect failed: {e}")
            return False

        return True

    async def close(self) -> None:
        """Stop health monitoring and release the transport. Terminal."""
        if self._closed:
            return
        self._closed = True
        await self.stop_health_monitoring()
        try:
            await self._close_transport()
        finally:
            self._set_status(ConnectorStatus.DISCONNECTED)
            logger.info(f"[{self.name}] Connector closed")

    async def __aenter__(self) -> "NetworkConnector":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ─────────────────────────────────────────────────────────────
    # Chain reads
    # ─────────────────────────────────────────────────────────────

    async def latest_block_number(self) -> int:
        number = await self._call("eth_blockNumber", self._fetch_latest_block_number)
        if self._state.latest_block is None or number > self._state.latest_block:
            self._state.latest_block = number
        return number

    async def block_by_number(self, number: int) -> Optional[Any]:
        return await self._call("eth_getBlockByNumber", lambda: self._fetch_block(number))

    async def transaction_receipt(self, tx_hash: str) -> Optional[Any]:
        return await self._call("eth_getTransactionReceipt", lambda: self._fetch_receipt(tx_hash))

    async def get_chain_id(self) -> int:
        return await self._call("eth_chainId", self._fetch_chain_id)

    async def health_check(self) -> ConnectorSnapshot:
        """
        Validate chain id and refresh the latest block.

        Raises:
            PipelineError: Any failure (connector is marked DEGRADED)
        """
        chain_id = await self.get_chain_id()
        if chain_id != self.chain_id:
            error = ChainIdMismatchError(self.chain_id, chain_id, network=self.name)
            self._on_error(error)
            raise error
        await self.latest_block_number()
        return self.snapshot()

    # ─────────────────────────────────────────────────────────────
    # Push subscriptions
    # ─────────────────────────────────────────────────────────────

    async def subscribe_heads(self) -> AsyncIterator[BlockHeader]:
        """Yield new-head notifications until the stream fails."""
        async for result in self._guarded_stream("newHeads"):
            try:
                header = BlockHeader(
                    network=self.name,
                    number=_to_int(result["number"]),
                    hash=str(result.get("hash") or ""),
                    timestamp=(
                        datetime.fromtimestamp(_to_int(result["timestamp"]), tz=timezone.utc)
                        if result.get("timestamp") is not None else None
                    ),
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"[{self.name}] Malformed head notification: {e}")
                continue
            if self._state.latest_block is None or header.number > self._state.latest_block:
                self._state.latest_block = header.number
            yield header

    async def subscribe_logs(self, log_filter: Optional[LogFilter] = None) -> AsyncIterator[LogEvent]:
        """Yield contract logs matching the filter."""
        params = log_filter.to_params() if log_filter else None
        async for result in self._guarded_stream("logs", params):
            try:
                event = LogEvent(
                    network=self.name,
                    address=str(result["address"]).lower(),
                    topics=tuple(str(t) for t in result.get("topics", [])),
                    data=str(result.get("data", "0x")),
                    block_number=_to_int(result["blockNumber"]),
                    tx_hash=str(result["transactionHash"]),
                    log_index=_to_int(result.get("logIndex", 0)),
                    removed=bool(result.get("removed", False)),
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"[{self.name}] Malformed log notification: {e}")
                continue
            yield event

    async def subscribe_pending(self) -> AsyncIterator[str]:
        """Yield hashes of pending (mempool) transactions."""
        async for result in self._guarded_stream("newPendingTransactions"):
            if isinstance(result, str):
                yield result

    async def _guarded_stream(
        self,
        kind: str,
        params: Optional[dict[str, Any]] = None,
    ) -> AsyncIterator[Any]:
        self._ensure_open()
        try:
            async for result in self._stream(kind, params):
                yield result
        except PipelineError as e:
            if not self._closed:
                self._on_error(e)
            raise
        except Exception as e:
            error = TransportDisconnectedError(
                f"{kind} stream failed: {e}",
                network=self.name,
                original_error=e,
            )
            if not self._closed:
                self._on_error(error)
            raise error from e

    # ─────────────────────────────────────────────────────────────
    # Health monitoring
    # ─────────────────────────────────────────────────────────────

    async def run_health_cycle(self) -> bool:
        """
        One health-monitor step.

        Degraded or never-connected connectors try to reconnect;
        connected ones run health_check().

        Returns:
            True if the connector is healthy afterwards
        """
        if self._closed:
            return False

        if self._state.status != ConnectorStatus.CONNECTED:
            return await self.reconnect()

        try:
            await self.health_check()
            return True
        except PipelineError as e:
            logger.warning(f"[{self.name}] Health check failed: {e}")
            return False

    async def start_health_monitoring(self) -> None:
        """Start background health monitoring."""
        if self._health_task is not None and not self._health_task.done():
            return
        self._health_task = asyncio.create_task(
            self._health_monitor_loop(),
            name=f"health:{self.name}",
        )
        logger.info(
            f"[{self.name}] Started health monitoring "
            f"(interval={self._settings.health_check_interval}s)"
        )

    async def stop_health_monitoring(self) -> None:
        """Stop background health monitoring."""
        if self._health_task is None:
            return
        self._health_task.cancel()
        try:
            await self._health_task
        except asyncio.CancelledError:
            pass
        self._health_task = None

    async def _health_monitor_loop(self) -> None:
        while not self._closed:
            try:
                await asyncio.sleep(self._settings.health_check_interval)
                await self.run_health_cycle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[{self.name}] Health monitor error: {e}")

    # ─────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────

    def _ensure_open(self) -> None:
        if self._closed:
            raise ConnectorClosedError("Connector is closed", network=self.name)

    async def _call(self, method: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Run one RPC call under the call timeout with error accounting."""
        self._ensure_open()
        if self._state.status not in (ConnectorStatus.CONNECTED, ConnectorStatus.DEGRADED):
            error = TransportDisconnectedError(
                f"{method} called while {self._state.status.value}",
                network=self.name,
            )
            self._record_rejected(error)
            raise error

        timeout = self._settings.call_timeout
        try:
            result = await asyncio.wait_for(factory(), timeout=timeout)
        except asyncio.TimeoutError as e:
            error = RpcTimeoutError(method, timeout, network=self.name, original_error=e)
            self._on_error(error)
            raise error from e
        except PipelineError as e:
            self._on_error(e)
            raise
        except Exception as e:
            error = TransportDisconnectedError(
                f"{method} failed: {e}",
                network=self.name,
                original_error=e,
            )
            self._on_error(error)
            raise error from e

        self._on_success()
        return result

    def _set_status(self, status: ConnectorStatus) -> None:
        self._state.status = status
        self._state.last_update_time = datetime.now(timezone.utc)
        if self._metrics is not None:
            self._metrics.set_connection_status(self.name, status.value)

    def _on_success(self) -> None:
        self._state.consecutive_errors = 0
        if self._state.status != ConnectorStatus.CONNECTED:
            previous = self._state.status
            self._set_status(ConnectorStatus.CONNECTED)
            if previous == ConnectorStatus.DEGRADED:
                logger.info(f"[{self.name}] Recovered to CONNECTED")

    def _record_rejected(self, error: PipelineError) -> None:
        # Not connected yet: count it without touching the state machine
        self._state.error_count += 1
        self._state.last_error = str(error)
        self._state.last_error_time = datetime.now(timezone.utc)
        if self._metrics is not None:
            self._metrics.record_error(self.name, error.error_class.value)

    def _on_error(self, error: PipelineError) -> None:
        self._state.error_count += 1
        self._state.consecutive_errors += 1
        self._state.last_error = str(error)
        self._state.last_error_time = datetime.now(timezone.utc)

        if self._metrics is not None:
            self._metrics.record_error(self.name, error.error_class.value)

        if self._closed:
            return

        if self._state.status != ConnectorStatus.DEGRADED:
            self._set_status(ConnectorStatus.DEGRADED)
            logger.warning(f"[{self.name}] Marked DEGRADED: {error}")
        elif self._state.consecutive_errors == self._settings.unhealthy_after_failures:
            logger.error(
                f"[{self.name}] Unhealthy after {self._state.consecutive_errors} "
                f"consecutive failures, still retrying"
            )

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name={self.name}, status={self._state.status.value})>"


class Web3NetworkConnector(NetworkConnector):
    """
    EVM connector: web3 AsyncHTTPProvider for reads, optional
    eth_subscribe WebSocket for push notifications.
    """

    def __init__(
        self,
        network: NetworkSettings,
        settings: Optional[ConnectorSettings] = None,
        metrics: Optional[Any] = None,
        subscription_client: Optional[EthSubscriptionClient] = None,
    ) -> None:
        super().__init__(network, settings, metrics)
        self._w3: Optional[AsyncWeb3] = None
        if subscription_client is None and network.ws_url:
            subscription_client = EthSubscriptionClient(network.ws_url, network=network.name)
        self._push = subscription_client

    @property
    def supports_push(self) -> bool:
        return self._push is not None

    async def _open(self) -> None:
        if self._w3 is None:
            self._w3 = AsyncWeb3(
                AsyncWeb3.AsyncHTTPProvider(
                    self._network.rpc_url,
                    request_kwargs={"timeout": self._settings.call_timeout},
                )
            )
            # BSC / Polygon style extraData in headers
            self._w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

        if not await self._w3.is_connected():
            raise TransportDisconnectedError(
                f"RPC endpoint unreachable: {self._network.rpc_url}",
                network=self.name,
            )

    async def _close_transport(self) -> None:
        if self._w3 is not None:
            w3, self._w3 = self._w3, None
            await w3.provider.disconnect()

    def _client(self) -> AsyncWeb3:
        if self._w3 is None:
            raise TransportDisconnectedError("RPC transport not open", network=self.name)
        return self._w3

    async def _fetch_chain_id(self) -> int:
        return int(await self._client().eth.chain_id)

    async def _fetch_latest_block_number(self) -> int:
        return int(await self._client().eth.get_block_number())

    async def _fetch_block(self, number: int) -> Optional[Any]:
        try:
            return await self._client().eth.get_block(number, full_transactions=True)
        except BlockNotFound:
            return None

    async def _fetch_receipt(self, tx_hash: str) -> Optional[Any]:
        try:
            return await self._client().eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    def _stream(self, kind: str, params: Optional[dict[str, Any]] = None) -> AsyncIterator[Any]:
        if self._push is None:
            return super()._stream(kind, params)
        return self._push.stream(kind, params)

    async def close(self) -> None:
        try:
            await super().close()
        finally:
            if self._push is not None:
                await self._push.close()


def _to_int(value: Any) -> int:
    """Hex-string or int quantity to int."""
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    raise TypeError(f"Not a quantity: {value!r}")
