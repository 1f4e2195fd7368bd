"""
Orchestrator - Network Pipeline.

============================================================
RESPONSIBILITY
============================================================
Runs one block of one network through every stage:

    BlockIngester ─► FilterEngine ─► RiskDetector ─► StatsAggregator ─► Publisher
                          │                                               ▲
                          └──────────── (rejected: metrics only) ─────────┘

- Transactions of a block are processed in batches of
  processing.batch_size, concurrently within a batch
- The block succeeds only if every transaction succeeded;
  any PipelineError makes the BlockSource retry the block
- Blocks of different networks share one worker pool
  (asyncio.Semaphore of processing.worker_count)
- Block and accepted-transaction points go to the time series
  best effort: a failed write is logged and counted, never retried

============================================================
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from chain_ingestion.ingester import BlockIngester
from chain_ingestion.models import Block, Transaction
from core.config import ProcessingSettings
from core.exceptions import PipelineError, StoreTimeoutError
from data_processing.deduplicator import TransactionDeduplicator
from data_processing.filter_engine import FilterEngine
from event_publishing.publisher import Publisher
from risk_scoring.alerting import build_alert
from risk_scoring.detector import RiskDetector
from storage.stats_aggregator import StatsAggregator
from storage.timeseries import TimeSeriesStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlockOutcome:
    """Per-block counts, for logging and tests."""

    network: str
    block_number: int
    tx_count: int
    processed: int
    filtered: int
    alerts: int
    duration_ms: float


class NetworkPipeline:
    """
    Stage chain for a single network.

    Usage:
        pipeline = NetworkPipeline(network, ingester, filter_engine, detector,
                                   aggregator, publisher, metrics=metrics)
        await pipeline.process_block(19_000_000)
    """

    def __init__(
        self,
        network: str,
        ingester: BlockIngester,
        filter_engine: FilterEngine,
        detector: RiskDetector,
        aggregator: StatsAggregator,
        publisher: Publisher,
        deduplicator: Optional[TransactionDeduplicator] = None,
        settings: Optional[ProcessingSettings] = None,
        worker_pool: Optional[asyncio.Semaphore] = None,
        metrics: Optional[Any] = None,
        timeseries: Optional[TimeSeriesStore] = None,
    ) -> None:
        self.network = network
        self._ingester = ingester
        self._filter = filter_engine
        self._detector = detector
        self._aggregator = aggregator
        self._publisher = publisher
        self._deduplicator = deduplicator
        self._settings = settings or ProcessingSettings()
        self._worker_pool = worker_pool or asyncio.Semaphore(self._settings.worker_count)
        self._metrics = metrics
        self._timeseries = timeseries

        self.last_outcome: Optional[BlockOutcome] = None

    async def process_block(self, number: int) -> BlockOutcome:
        """
        Fetch and process one block.

        Raises:
            PipelineError: Any stage failed; the block must be retried
        """
        async with self._worker_pool:
            started = time.monotonic()
            # Connector and ingester account for their own errors
            block = await self._ingester.fetch(number)
            try:
                outcome = await self._process_transactions(block, started)
                await self._aggregator.update_latest_block(block)
                await self._write_point(block)
                await self._publisher.publish_block(block)
            except PipelineError as e:
                if self._metrics is not None:
                    self._metrics.record_error(self.network, e.error_class.value)
                raise

            duration_ms = (time.monotonic() - started) * 1000
            if self._metrics is not None:
                self._metrics.record_block_processed(self.network, duration_ms)

        outcome = BlockOutcome(
            network=self.network,
            block_number=block.number,
            tx_count=block.tx_count,
            processed=outcome.processed,
            filtered=outcome.filtered,
            alerts=outcome.alerts,
            duration_ms=duration_ms,
        )
        self.last_outcome = outcome
        logger.info(
            f"[{self.network}] Block {block.number}: {outcome.tx_count} txs, "
            f"{outcome.processed} processed, {outcome.filtered} filtered, "
            f"{outcome.alerts} alerts ({duration_ms:.0f}ms)"
        )
        return outcome

    async def _process_transactions(self, block: Block, started: float) -> BlockOutcome:
        processed = filtered = alerts = 0
        batch_size = self._settings.batch_size
        txs = block.transactions

        for offset in range(0, len(txs), batch_size):
            chunk = txs[offset:offset + batch_size]
            results = await asyncio.gather(
                *(self.process_transaction(tx) for tx in chunk),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
                passed, alerted = result
                if passed:
                    processed += 1
                else:
                    filtered += 1
                if alerted:
                    alerts += 1

        return BlockOutcome(
            network=self.network,
            block_number=block.number,
            tx_count=block.tx_count,
            processed=processed,
            filtered=filtered,
            alerts=alerts,
            duration_ms=(time.monotonic() - started) * 1000,
        )

    async def process_transaction(self, tx: Transaction) -> tuple[bool, bool]:
        """
        Run one transaction through filter, risk, stats and publish.

        Returns:
            (passed_filter, alert_published)
        """
        started = time.monotonic()
        result = await self._filter.evaluate(tx)

        if not result.should_process:
            if self._metrics is not None:
                for reason in result.reasons:
                    self._metrics.record_filtered(self.network, reason)
                self._metrics.record_transaction(
                    self.network, "filtered", (time.monotonic() - started) * 1000
                )
            return False, False

        risk = self._detector.analyze(tx)
        if self._metrics is not None:
            self._metrics.record_risk_score(self.network, risk.score)

        await self._aggregator.record_transaction(tx)
        await self._write_point(tx)
        if risk.risk_detected:
            await self._aggregator.record_suspicious(tx.from_address, tx.network)
            await self._aggregator.record_high_risk(tx, risk.to_dict())

        await self._publisher.publish_transaction(tx)

        alerted = False
        if risk.risk_detected:
            alert = build_alert(tx, risk)
            await self._publisher.publish_alert(alert)
            alerted = True
            if self._metrics is not None:
                self._metrics.record_alert(self.network, alert.level.value, alert.type.value)
            logger.warning(
                f"[{self.network}] {alert.title}: {tx.hash} "
                f"(score={risk.score:.2f}, level={risk.level.value}, factors={list(risk.factors)})"
            )

        await self._mark_seen(tx)

        if self._metrics is not None:
            self._metrics.record_transaction(
                self.network, "processed", (time.monotonic() - started) * 1000
            )
        return True, alerted

    async def _write_point(self, record: Any) -> None:
        if self._timeseries is None:
            return
        try:
            if isinstance(record, Block):
                await self._timeseries.write_block(record)
            else:
                await self._timeseries.write_transaction(record)
        except PipelineError as e:
            logger.warning(f"[{self.network}] Time series write failed: {e}")
            if self._metrics is not None:
                self._metrics.record_error(self.network, e.error_class.value)

    async def _mark_seen(self, tx: Transaction) -> None:
        if self._deduplicator is None:
            return
        try:
            await self._deduplicator.mark(tx.network, tx.hash)
        except StoreTimeoutError as e:
            # Transaction is done; a missing mark only risks a later duplicate
            logger.warning(f"[{self.network}] Could not mark {tx.hash} as seen: {e}")
            if self._metrics is not None:
                self._metrics.record_error(self.network, e.error_class.value)
