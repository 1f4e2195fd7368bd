"""
Event Publishing - Publisher.

============================================================
PURPOSE
============================================================
At-least-once delivery of transactions, blocks and alerts.

============================================================
FLOW
============================================================
    publish() ──► bounded asyncio.Queue ──► flusher task ──► Transport
                    (shared by all networks)   (batch by size/time)

- The queue is the only backpressure point. A full queue makes
  the producer wait up to enqueue_timeout, then the message is
  dropped, messages_dropped is incremented and QueueFullError
  is raised. Nothing is dropped silently.
- A failed batch is retried with exponential backoff until it
  is delivered; while it is retried the queue fills and
  producers hit the backpressure above.
- close() stops intake, flushes within a grace period, then
  closes the transport. Anything left is counted as dropped.

============================================================
USAGE
============================================================
    publisher = Publisher(KafkaTransport(settings.kafka), settings.kafka)
    publisher.start()
    await publisher.publish_transaction(tx)
    await publisher.close()

============================================================
"""

import asyncio
import logging
import time
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from chain_ingestion.models import Block, Transaction
from core.config import KafkaProducerSettings, KafkaSettings
from core.exceptions import PublishError, QueueFullError
from event_publishing.messages import (
    OutboundMessage,
    alert_message,
    block_message,
    transaction_message,
)
from event_publishing.transport import Transport
from risk_scoring.types import Alert


logger = logging.getLogger(__name__)


class Publisher:
    """
    Queued, batching publisher.

    ============================================================
    RESPONSIBILITIES
    ============================================================
    1. Bounded intake with timeout-then-drop
    2. Batch by size or time window
    3. Retry failed batches with backoff
    4. Graceful flush on close
    ============================================================
    """

    # Upper bound for the retry backoff
    MAX_RETRY_BACKOFF = 30.0

    def __init__(
        self,
        transport: Transport,
        settings: Optional[KafkaSettings] = None,
        metrics: Optional[Any] = None,
    ) -> None:
        self._transport = transport
        self._settings = settings or KafkaSettings()
        self._producer: KafkaProducerSettings = self._settings.producer
        self._metrics = metrics

        self._queue: "asyncio.Queue[OutboundMessage]" = asyncio.Queue(maxsize=self._producer.queue_size)
        self._flusher: Optional[asyncio.Task] = None
        self._closing = False
        self._closed = False

        self._published = 0
        self._dropped = 0
        self._failed_batches = 0
        # Messages taken off the queue and not yet delivered
        self._batch: List[OutboundMessage] = []
        self._last_error: Optional[str] = None

    @property
    def topics(self):
        return self._settings.topics

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        return self._flusher is not None and not self._flusher.done()

    def start(self) -> None:
        """Start the flusher task (idempotent)."""
        if self.is_running:
            return
        self._flusher = asyncio.create_task(self._flush_loop(), name="publisher-flusher")
        logger.info(
            f"Publisher started via {self._transport.name} "
            f"(batch={self._producer.batch_size}, window={self._producer.batch_timeout}s, "
            f"queue={self._producer.queue_size})"
        )

    # --------------------------------------------------------
    # INTAKE
    # --------------------------------------------------------

    async def publish(
        self,
        topic: str,
        key: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        await self.enqueue(OutboundMessage(topic=topic, key=key, payload=payload, headers=headers or {}))

    async def publish_batch(self, messages: Sequence[OutboundMessage]) -> None:
        for message in messages:
            await self.enqueue(message)

    async def publish_transaction(self, tx: Transaction) -> None:
        await self.enqueue(transaction_message(tx, self.topics.transactions))

    async def publish_block(self, block: Block) -> None:
        await self.enqueue(block_message(block, self.topics.blocks))

    async def publish_alert(self, alert: Alert) -> None:
        await self.enqueue(alert_message(alert, self.topics.alerts))

    async def enqueue(self, message: OutboundMessage) -> None:
        """
        Queue a message for delivery.

        Raises:
            PublishError: Publisher is closing
            QueueFullError: Queue stayed full for enqueue_timeout
        """
        if self._closing:
            raise PublishError("Publisher is closed", topic=message.topic)

        timeout = self._producer.enqueue_timeout
        try:
            await asyncio.wait_for(self._queue.put(message), timeout=timeout)
        except asyncio.TimeoutError:
            self._dropped += 1
            if self._metrics is not None:
                self._metrics.record_drop(message.topic)
            raise QueueFullError(message.topic, timeout)

        if self._metrics is not None:
            self._metrics.set_queue_size(self._queue.qsize())

    # --------------------------------------------------------
    # DELIVERY
    # --------------------------------------------------------

    async def _flush_loop(self) -> None:
        while True:
            batch = self._batch = []
            await self._collect_batch(batch)
            if not batch:
                continue
            try:
                await self._deliver(batch)
            finally:
                self._batch = []
                for _ in batch:
                    self._queue.task_done()
                if self._metrics is not None:
                    self._metrics.set_queue_size(self._queue.qsize())

    async def _collect_batch(self, batch: List[OutboundMessage]) -> None:
        """Wait for one message, then fill `batch` until size or time window."""
        window = self._producer.batch_timeout
        try:
            batch.append(await asyncio.wait_for(self._queue.get(), timeout=window))
        except asyncio.TimeoutError:
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + window
        while len(batch) < self._producer.batch_size:
            if not self._queue.empty():
                batch.append(self._queue.get_nowait())
                continue
            remaining = deadline - loop.time()
            if remaining <= 0 or self._closing:
                break
            try:
                batch.append(await asyncio.wait_for(self._queue.get(), timeout=remaining))
            except asyncio.TimeoutError:
                break

    async def _deliver(self, batch: List[OutboundMessage]) -> None:
        attempt = 0
        while True:
            started = time.monotonic()
            try:
                await self._transport.send_batch(batch)
            except PublishError as e:
                self._on_batch_failure(batch, attempt, e)
            except Exception as e:
                logger.error(f"Unexpected publish error: {e}", exc_info=True)
                self._on_batch_failure(batch, attempt, e)
            else:
                self._on_batch_success(batch, (time.monotonic() - started) * 1000)
                return

            delay = min(self._producer.retry_backoff * (2 ** attempt), self.MAX_RETRY_BACKOFF)
            attempt += 1
            await asyncio.sleep(delay)

    def _on_batch_success(self, batch: List[OutboundMessage], duration_ms: float) -> None:
        self._published += len(batch)
        if self._metrics is None:
            return
        for topic, count in Counter(m.topic for m in batch).items():
            self._metrics.record_publish(topic, duration_ms, count)

    def _on_batch_failure(self, batch: List[OutboundMessage], attempt: int, error: Exception) -> None:
        self._failed_batches += 1
        self._last_error = str(error)
        topic = batch[0].topic
        if self._metrics is not None:
            self._metrics.record_publish_failure(topic)
            self._metrics.record_error("publisher", "transient")

        message = f"Batch of {len(batch)} for '{topic}' failed (attempt {attempt + 1}): {error}"
        if attempt + 1 >= self._producer.max_retries:
            logger.error(message)
        else:
            logger.warning(message)

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def close(self, grace_period: Optional[float] = None) -> None:
        """
        Stop intake, flush within the grace period, close the transport.
        """
        if self._closed:
            return
        self._closing = True
        grace = self._producer.close_grace_period if grace_period is None else grace_period
        started = time.monotonic()

        if self.is_running:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=grace)
            except asyncio.TimeoutError:
                logger.error(f"Publisher flush exceeded {grace}s grace period")

        undelivered = list(self._batch)
        if self._flusher is not None:
            self._flusher.cancel()
            try:
                await self._flusher
            except asyncio.CancelledError:
                pass

        while not self._queue.empty():
            undelivered.append(self._queue.get_nowait())
        leftover = len(undelivered)
        if leftover:
            self._dropped += leftover
            if self._metrics is not None:
                for message in undelivered:
                    self._metrics.record_drop(message.topic)
            logger.error(f"Publisher closed with {leftover} undelivered message(s)")

        remaining = max(grace - (time.monotonic() - started), 0.0)
        await self._transport.close(timeout=remaining)
        self._closed = True
        logger.info(f"Publisher closed ({self._published} published, {self._dropped} dropped)")

    async def health_check(self) -> bool:
        if self._closing:
            return False
        return await self._transport.health_check()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "transport": self._transport.name,
            "running": self.is_running,
            "queue_size": self._queue.qsize(),
            "queue_capacity": self._producer.queue_size,
            "in_flight": len(self._batch),
            "published": self._published,
            "dropped": self._dropped,
            "failed_batches": self._failed_batches,
            "last_error": self._last_error,
        }
