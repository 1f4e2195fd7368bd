"""
Orchestrator - Core.

============================================================
RESPONSIBILITY
============================================================
Runs the ingestion service.

- One long-lived task per enabled network drives that
  network's BlockSource; blocks of one network are processed
  strictly in order by that task
- A shared worker pool (semaphore) bounds cross-network work
- One root stop event reaches every task and subscription
- Shutdown: stop tasks, close connectors, flush the
  publisher within the grace deadline, close the store

============================================================
FAILURE ISOLATION
============================================================
- Chain id mismatch at startup -> that network is disabled,
  the others keep running
- Unreachable endpoint -> retried with backoff, reported
  unhealthy meanwhile
- Nothing after startup stops the process

============================================================
"""

import asyncio
import json
import logging
import signal
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from chain_ingestion.block_source import BlockSource, create_head_input, wait_or_stop
from chain_ingestion.connector import NetworkConnector, Web3NetworkConnector
from chain_ingestion.ingester import BlockIngester
from core.config import AppConfig, ConnectorSettings, NetworkSettings
from core.exceptions import ChainIdMismatchError, ConfigurationError, PipelineError
from data_processing.deduplicator import TransactionDeduplicator
from data_processing.filter_engine import FilterEngine
from data_processing.types import FilterRules
from event_publishing.publisher import Publisher
from event_publishing.transport import Transport
from monitoring.health_checks import ComponentHealth, HealthReport, aggregate_health
from monitoring.metrics import MetricsRecorder
from orchestrator.pipeline import NetworkPipeline
from risk_scoring.address_sets import InMemoryAddressSet
from risk_scoring.config import RiskDetectorConfig
from risk_scoring.detector import RiskDetector
from storage.checkpoint import CheckpointStore
from storage.kv_store import KeyValueStore
from storage.stats_aggregator import StatsAggregator
from storage.timeseries import InMemoryTimeSeriesStore, KeyValueTimeSeriesStore, TimeSeriesStore


logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[NetworkSettings, ConnectorSettings, Any], NetworkConnector]


# ============================================================
# LOGGING SETUP
# ============================================================

def setup_logging(level: str = "INFO", log_format: str = "text") -> logging.Logger:
    """
    Set up process-wide logging.

    Args:
        level: Log level
        log_format: Output format (json or text)

    Returns:
        The service logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
            })
        )
    else:
        formatter = logging.Formatter("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logging.getLogger("orchestrator")


def _build_timeseries(config: AppConfig, store: KeyValueStore) -> Optional[TimeSeriesStore]:
    settings = config.timeseries
    if not settings.enabled:
        return None
    if settings.backend == "memory":
        return InMemoryTimeSeriesStore(settings.retention_seconds)
    return KeyValueTimeSeriesStore(store, settings.retention_seconds)


def _default_connector_factory(
    network: NetworkSettings,
    settings: ConnectorSettings,
    metrics: Any,
) -> NetworkConnector:
    return Web3NetworkConnector(network, settings, metrics)


# ============================================================
# PER-NETWORK RUNTIME
# ============================================================

@dataclass
class NetworkRuntime:
    """Everything owned by one network task."""

    settings: NetworkSettings
    connector: NetworkConnector
    source: BlockSource
    pipeline: NetworkPipeline
    task: Optional[asyncio.Task] = None
    disabled_reason: Optional[str] = None

    @property
    def name(self) -> str:
        return self.settings.name

    @property
    def disabled(self) -> bool:
        return self.disabled_reason is not None

    def status(self) -> Dict[str, Any]:
        data = self.connector.snapshot().to_dict()
        data["source"] = self.source.kind.value
        data["enabled"] = not self.disabled
        data["disabled_reason"] = self.disabled_reason
        if self.disabled:
            data["is_healthy"] = False
        return data


# ============================================================
# INGESTION SERVICE
# ============================================================

class IngestionService:
    """
    Multi-network ingestion and risk scoring service.

    Usage:
        service = IngestionService(config, store, transport)
        await service.run()            # until SIGINT / SIGTERM
    """

    def __init__(
        self,
        config: AppConfig,
        store: KeyValueStore,
        transport: Transport,
        metrics: Optional[MetricsRecorder] = None,
        connector_factory: Optional[ConnectorFactory] = None,
        timeseries: Optional[TimeSeriesStore] = None,
    ) -> None:
        self._config = config
        self._store = store
        self.metrics = metrics or MetricsRecorder()
        self._connector_factory = connector_factory or _default_connector_factory

        self._stop = asyncio.Event()
        self._running = False
        self._started_at: Optional[float] = None
        self._stream_tasks: List[asyncio.Task] = []

        # Shared stages
        self.deduplicator = TransactionDeduplicator(
            store,
            ttl_seconds=config.filter.dedup_ttl_seconds,
            metrics=self.metrics,
        )
        self.filter_engine = FilterEngine(
            FilterRules.build(
                min_value_wei=config.filter.min_value_wei,
                exclude_contracts=config.filter.exclude_contracts,
                include_addresses=config.filter.include_addresses,
            ),
            deduplicator=self.deduplicator,
        )
        self.detector = RiskDetector(
            RiskDetectorConfig.from_settings(config.risk),
            blacklist=InMemoryAddressSet.blacklist(config.risk.blacklist),
            suspicious_contracts=InMemoryAddressSet.suspicious_contracts(config.risk.suspicious_contracts),
        )
        self.aggregator = StatsAggregator(store, high_risk_retention=config.risk.high_risk_retention)
        self.publisher = Publisher(transport, config.kafka, metrics=self.metrics)
        self.checkpoints = CheckpointStore(store)
        self.timeseries = timeseries if timeseries is not None else _build_timeseries(config, store)
        self._worker_pool = asyncio.Semaphore(config.processing.worker_count)

        self.networks: Dict[str, NetworkRuntime] = {}
        for network in config.enabled_networks():
            self.networks[network.name] = self._build_network(network)

    def _build_network(self, network: NetworkSettings) -> NetworkRuntime:
        connector = self._connector_factory(network, self._config.connector, self.metrics)
        source = BlockSource(
            connector,
            self.checkpoints,
            create_head_input(network.source_kind, self._config.connector, self.metrics),
            settings=self._config.connector,
            start_block=network.start_block,
            metrics=self.metrics,
        )
        pipeline = NetworkPipeline(
            network.name,
            BlockIngester(connector, metrics=self.metrics),
            self.filter_engine,
            self.detector,
            self.aggregator,
            self.publisher,
            deduplicator=self.deduplicator,
            settings=self._config.processing,
            worker_pool=self._worker_pool,
            metrics=self.metrics,
            timeseries=self.timeseries,
        )
        return NetworkRuntime(settings=network, connector=connector, source=source, pipeline=pipeline)

    # --------------------------------------------------------
    # Properties
    # --------------------------------------------------------

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self._started_at if self._started_at else 0.0

    # --------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------

    async def start(self) -> None:
        """Start the publisher and one task per network."""
        if self._running:
            return
        if not self.networks:
            logger.warning("No enabled networks configured")

        self._stop.clear()
        self._running = True
        self._started_at = time.monotonic()
        self.publisher.start()

        for runtime in self.networks.values():
            runtime.task = asyncio.create_task(self._run_network(runtime), name=f"network:{runtime.name}")

        logger.info(f"Ingestion service started ({', '.join(self.networks) or 'no networks'})")

    async def run(self, shutdown_timeout: Optional[float] = None) -> None:
        """Start, wait for a stop signal, then shut down."""
        await self.start()
        self._install_signal_handlers()
        try:
            await self._stop.wait()
        finally:
            self._restore_signal_handlers()
            await self.shutdown(shutdown_timeout)

    def request_stop(self) -> None:
        if not self._stop.is_set():
            logger.info("Shutdown requested")
            self._stop.set()

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop every network, flush the publisher, release resources.

        Args:
            timeout: Grace period for the publisher flush
        """
        if not self._running:
            return
        self._stop.set()
        grace = self._config.kafka.producer.close_grace_period if timeout is None else timeout

        tasks = [rt.task for rt in self.networks.values() if rt.task is not None] + self._stream_tasks
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=grace)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for runtime in self.networks.values():
            await runtime.connector.close()

        await self.publisher.close(grace)
        if self.timeseries is not None:
            await self.timeseries.close()
        await self._store.close()
        self._running = False
        logger.info("Ingestion service stopped")

    # --------------------------------------------------------
    # Network tasks
    # --------------------------------------------------------

    async def _run_network(self, runtime: NetworkRuntime) -> None:
        name = runtime.name
        try:
            if not await self._connect(runtime):
                return
            await runtime.connector.start_health_monitoring()
            self._start_streams(runtime)
            await runtime.source.run(runtime.pipeline.process_block, self._stop)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Never let one network take the process down
            logger.error(f"[{name}] Network task crashed: {e}", exc_info=True)
            self.metrics.record_error(name, "unexpected")
            runtime.disabled_reason = f"crashed: {e}"

    async def _connect(self, runtime: NetworkRuntime) -> bool:
        """Connect with backoff. False if disabled or stopped."""
        settings = self._config.connector
        attempt = 0
        while not self._stop.is_set():
            try:
                await runtime.connector.connect()
                return True
            except ChainIdMismatchError as e:
                runtime.disabled_reason = str(e)
                logger.error(f"[{runtime.name}] Disabled: {e}")
                return False
            except PipelineError as e:
                delay = min(settings.reconnect_backoff * (2 ** attempt), settings.max_reconnect_backoff)
                attempt += 1
                logger.warning(f"[{runtime.name}] Connect failed ({e}), retry in {delay:.1f}s")
                if await wait_or_stop(self._stop, delay):
                    return False
        return False

    def _start_streams(self, runtime: NetworkRuntime) -> None:
        processing = self._config.processing
        if not runtime.connector.supports_push:
            return
        if processing.subscribe_logs:
            self._stream_tasks.append(asyncio.create_task(
                self._observe_stream(runtime, "logs"), name=f"logs:{runtime.name}",
            ))
        if processing.subscribe_pending:
            self._stream_tasks.append(asyncio.create_task(
                self._observe_stream(runtime, "pending"), name=f"pending:{runtime.name}",
            ))

    async def _observe_stream(self, runtime: NetworkRuntime, kind: str) -> None:
        """Count log / pending-transaction notifications until stopped."""
        connector = runtime.connector
        settings = self._config.connector
        attempt = 0
        while not self._stop.is_set():
            stream = connector.subscribe_logs() if kind == "logs" else connector.subscribe_pending()
            try:
                async for _ in stream:
                    attempt = 0
                    self.metrics.record_stream_event(runtime.name, kind)
                    if self._stop.is_set():
                        return
            except PipelineError as e:
                logger.warning(f"[{runtime.name}] {kind} subscription lost: {e}")

            delay = min(settings.reconnect_backoff * (2 ** attempt), settings.max_reconnect_backoff)
            attempt += 1
            if await wait_or_stop(self._stop, delay):
                return

    # --------------------------------------------------------
    # Signal Handlers
    # --------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        """Install signal handlers for graceful shutdown."""
        if sys.platform == "win32":
            signal.signal(signal.SIGINT, lambda signum, frame: self.request_stop())
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_stop)

    def _restore_signal_handlers(self) -> None:
        if sys.platform == "win32":
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    # --------------------------------------------------------
    # Health & Status
    # --------------------------------------------------------

    def network_names(self) -> List[str]:
        return list(self.networks)

    def get_network_status(self, name: str) -> Optional[Dict[str, Any]]:
        runtime = self.networks.get(name)
        return runtime.status() if runtime is not None else None

    async def get_network_stats(self, name: str) -> Optional[Dict[str, Any]]:
        """Connector status plus stored latest block and metrics."""
        runtime = self.networks.get(name)
        if runtime is None:
            return None
        try:
            latest = await self.aggregator.get_latest_block(name)
        except PipelineError as e:
            logger.warning(f"[{name}] Latest block unavailable: {e}")
            latest = {}
        return {
            **runtime.status(),
            "stored_latest_block": latest,
            "metrics": self.metrics.get_network_metrics(name),
        }

    async def get_transaction_stats(self, name: str, window_seconds: int) -> Optional[Dict[str, Any]]:
        """Windowed transaction figures; None for an unknown network."""
        if name not in self.networks:
            return None
        return await self._require_timeseries().transaction_stats(name, window_seconds)

    async def get_block_stats(self, name: str, window_seconds: int) -> Optional[Dict[str, Any]]:
        if name not in self.networks:
            return None
        return await self._require_timeseries().block_stats(name, window_seconds)

    async def get_transaction_volume(
        self,
        name: str,
        window_seconds: int,
        bucket_seconds: int,
    ) -> Optional[List[Dict[str, Any]]]:
        if name not in self.networks:
            return None
        return await self._require_timeseries().transaction_volume(name, window_seconds, bucket_seconds)

    def _require_timeseries(self) -> TimeSeriesStore:
        if self.timeseries is None:
            raise ConfigurationError("Time series is disabled (timeseries.enabled=false)")
        return self.timeseries

    def get_config_view(self) -> Dict[str, Any]:
        """Running configuration with secrets masked."""
        return self._config.redacted()

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "stop_requested": self._stop.is_set(),
            "uptime_seconds": round(self.uptime_seconds, 3),
            "current_time": datetime.now(timezone.utc).isoformat(),
            "networks": [rt.status() for rt in self.networks.values()],
            "publisher": self.publisher.get_stats(),
            "filter": self.filter_engine.get_filter_stats(),
            "risk": self.detector.get_stats(),
            "dedup": self.deduplicator.get_stats(),
        }

    async def health_check(self) -> HealthReport:
        components = [
            ComponentHealth(
                name=f"network:{rt.name}",
                healthy=rt.status()["is_healthy"],
                detail=rt.connector.status.value if not rt.disabled else str(rt.disabled_reason),
            )
            for rt in self.networks.values()
        ]
        store_ok = await self._store.ping()
        components.append(ComponentHealth(name="store", healthy=store_ok, critical=True))
        publisher_ok = await self.publisher.health_check()
        components.append(ComponentHealth(name="publisher", healthy=publisher_ok, critical=True))
        return aggregate_health(components)


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "IngestionService",
    "NetworkRuntime",
    "setup_logging",
]
