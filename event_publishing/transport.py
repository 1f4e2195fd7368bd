"""
Event Publishing - Transports.

============================================================
PURPOSE
============================================================
Delivery backends behind the Publisher.

- KafkaTransport: confluent-kafka Producer (production)
- InMemoryTransport: records messages (dry runs and tests)

A transport either delivers a whole batch or raises
PublishError; the Publisher owns retries.

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from confluent_kafka import KafkaError, KafkaException, Producer

from core.config import KafkaSettings
from core.exceptions import PublishError
from event_publishing.messages import OutboundMessage


logger = logging.getLogger(__name__)


class Transport(ABC):
    """Outbound channel for message batches."""

    name: str = "transport"

    @abstractmethod
    async def send_batch(self, messages: Sequence[OutboundMessage]) -> None:
        """
        Deliver every message or raise.

        Raises:
            PublishError: Any message was not acknowledged
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass

    async def close(self, timeout: float = 10.0) -> None:
        pass


# ─────────────────────────────────────────────────────────────
# Kafka
# ─────────────────────────────────────────────────────────────

class KafkaTransport(Transport):
    """
    confluent-kafka producer.

    produce() only enqueues into librdkafka; the batch counts as
    delivered once flush() reports nothing outstanding and no
    delivery callback reported an error.
    """

    name = "kafka"

    def __init__(
        self,
        settings: Optional[KafkaSettings] = None,
        producer: Optional[Any] = None,
        flush_timeout: float = 10.0,
    ) -> None:
        self._settings = settings or KafkaSettings()
        self._flush_timeout = flush_timeout
        self._producer = producer if producer is not None else Producer(self._producer_config())
        logger.info(f"Kafka producer ready for: {', '.join(self._settings.brokers)}")

    def _producer_config(self) -> Dict[str, Any]:
        producer = self._settings.producer
        return {
            "bootstrap.servers": ",".join(self._settings.brokers),
            "client.id": self._settings.client_id,
            "acks": "all",
            "retries": producer.max_retries,
            "linger.ms": int(producer.batch_timeout * 1000),
            "batch.num.messages": producer.batch_size,
            "compression.type": "snappy",
            "enable.idempotence": True,
        }

    async def send_batch(self, messages: Sequence[OutboundMessage]) -> None:
        if not messages:
            return
        errors: List[str] = []

        def on_delivery(err: Optional[KafkaError], msg: Any) -> None:
            if err is not None:
                errors.append(str(err))

        topic = messages[0].topic
        try:
            for message in messages:
                self._produce(message, on_delivery)
        except (KafkaException, BufferError) as e:
            raise PublishError(f"Kafka produce failed: {e}", topic=topic, original_error=e)

        loop = asyncio.get_running_loop()
        remaining = await loop.run_in_executor(None, self._producer.flush, self._flush_timeout)

        if remaining:
            raise PublishError(f"{remaining} message(s) not acknowledged before flush timeout", topic=topic)
        if errors:
            raise PublishError(
                f"{len(errors)} delivery failure(s): {errors[0]}",
                topic=topic,
                context={"failures": len(errors)},
            )

    def _produce(self, message: OutboundMessage, on_delivery: Any) -> None:
        kwargs = dict(
            topic=message.topic,
            key=message.encode_key(),
            value=message.encode_value(),
            headers=message.encode_headers(),
            on_delivery=on_delivery,
        )
        try:
            self._producer.produce(**kwargs)
        except BufferError:
            # Local queue full: serve callbacks to make room, then retry once
            self._producer.poll(1.0)
            self._producer.produce(**kwargs)
        self._producer.poll(0)

    async def health_check(self) -> bool:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, lambda: self._producer.list_topics(timeout=5))
        except KafkaException as e:
            logger.warning(f"Kafka health check failed: {e}")
            return False
        return True

    async def close(self, timeout: float = 10.0) -> None:
        loop = asyncio.get_running_loop()
        remaining = await loop.run_in_executor(None, self._producer.flush, timeout)
        if remaining:
            logger.error(f"Kafka producer closed with {remaining} undelivered message(s)")
        else:
            logger.info("Kafka producer flushed and closed")


# ─────────────────────────────────────────────────────────────
# In-memory
# ─────────────────────────────────────────────────────────────

class InMemoryTransport(Transport):
    """
    Records delivered messages.

    fail_next makes the next N send_batch calls raise, for
    exercising the retry path.
    """

    name = "memory"

    def __init__(self) -> None:
        self.messages: List[OutboundMessage] = []
        self.batches: int = 0
        self.fail_next: int = 0
        self.healthy: bool = True
        self.closed: bool = False

    async def send_batch(self, messages: Sequence[OutboundMessage]) -> None:
        if self.fail_next > 0:
            self.fail_next -= 1
            raise PublishError("Simulated transport failure", topic=messages[0].topic if messages else None)
        self.batches += 1
        self.messages.extend(messages)

    def by_topic(self, topic: str) -> List[OutboundMessage]:
        return [m for m in self.messages if m.topic == topic]

    async def health_check(self) -> bool:
        return self.healthy

    async def close(self, timeout: float = 10.0) -> None:
        self.closed = True
