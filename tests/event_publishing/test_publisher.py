"""
Tests for the outbound Publisher and transports.

============================================================
TEST PRINCIPLES
============================================================
- A full queue drops with a metric and an error, never silently
- Failed batches are retried until delivered
- close() flushes what it can and counts the rest as dropped
- Kafka delivery reports failures per batch

============================================================
"""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from confluent_kafka import KafkaException

from chain_ingestion.models import Block
from core.config import KafkaProducerSettings, KafkaSettings
from core.exceptions import PublishError, QueueFullError
from event_publishing.messages import alert_message, block_message, transaction_message
from event_publishing.publisher import Publisher
from event_publishing.transport import InMemoryTransport, KafkaTransport
from monitoring.metrics import MetricsRecorder
from risk_scoring.alerting import build_alert
from risk_scoring.detector import RiskDetector

from conftest import BASE_TIMESTAMP, make_tx, wait_until


def kafka_settings(**producer) -> KafkaSettings:
    defaults = dict(batch_size=10, batch_timeout=0.02, retry_backoff=0.01, close_grace_period=1.0)
    defaults.update(producer)
    return KafkaSettings(producer=KafkaProducerSettings(**defaults))


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def metrics():
    return MetricsRecorder()


# ============================================================
# BACKPRESSURE
# ============================================================

class TestBackpressure:
    """Bounded queue with timeout-then-drop."""

    @pytest.mark.asyncio
    async def test_full_queue_drops_with_error(self, transport, metrics):
        publisher = Publisher(transport, kafka_settings(queue_size=1, enqueue_timeout=0.05), metrics)

        # Flusher not started, so nothing drains the queue
        await publisher.publish_transaction(make_tx())
        with pytest.raises(QueueFullError) as exc_info:
            await publisher.publish_transaction(make_tx(tx_hash="0x" + "bb" * 32))

        assert exc_info.value.topic == "blockchain.transactions"
        assert metrics.get_counter("messages_dropped", "blockchain.transactions") == 1
        assert publisher.get_stats()["dropped"] == 1

    @pytest.mark.asyncio
    async def test_close_without_start_counts_drops(self, transport, metrics):
        publisher = Publisher(transport, kafka_settings(), metrics)
        await publisher.publish_transaction(make_tx())
        await publisher.publish_transaction(make_tx(tx_hash="0x" + "bb" * 32))

        await publisher.close()

        assert transport.messages == []
        assert transport.closed is True
        assert publisher.get_stats()["dropped"] == 2
        assert metrics.get_counter("messages_dropped") == 2


# ============================================================
# DELIVERY
# ============================================================

class TestDelivery:
    """Batching and retries."""

    @pytest.mark.asyncio
    async def test_messages_delivered_in_order(self, transport, metrics):
        publisher = Publisher(transport, kafka_settings(), metrics)
        publisher.start()

        hashes = [f"0x{i:064x}" for i in range(5)]
        for tx_hash in hashes:
            await publisher.publish_transaction(make_tx(tx_hash=tx_hash))

        await wait_until(lambda: len(transport.messages) == 5)
        assert [m.key for m in transport.messages] == hashes
        assert metrics.get_counter("messages_published", "blockchain.transactions") == 5

        await publisher.close()

    @pytest.mark.asyncio
    async def test_publish_batch_and_raw_publish(self, transport):
        publisher = Publisher(transport, kafka_settings())
        publisher.start()

        await publisher.publish("custom.topic", "k1", {"a": 1}, headers={"network": "ethereum"})
        await publisher.publish_batch([
            transaction_message(make_tx(tx_hash=f"0x{i:064x}"), "blockchain.transactions")
            for i in range(3)
        ])
        await publisher.close()

        assert [m.key for m in transport.by_topic("custom.topic")] == ["k1"]
        assert transport.by_topic("custom.topic")[0].headers == {"network": "ethereum"}
        assert len(transport.by_topic("blockchain.transactions")) == 3

    @pytest.mark.asyncio
    async def test_batch_size_bounds_batches(self, transport):
        publisher = Publisher(transport, kafka_settings(batch_size=2))
        for i in range(5):
            await publisher.publish_transaction(make_tx(tx_hash=f"0x{i:064x}"))

        publisher.start()
        await wait_until(lambda: len(transport.messages) == 5)

        assert transport.batches == 3
        await publisher.close()

    @pytest.mark.asyncio
    async def test_failed_batch_retried(self, transport, metrics):
        transport.fail_next = 2
        publisher = Publisher(transport, kafka_settings(), metrics)
        publisher.start()

        await publisher.publish_transaction(make_tx())
        await wait_until(lambda: len(transport.messages) == 1)

        stats = publisher.get_stats()
        assert stats["failed_batches"] == 2
        assert stats["published"] == 1
        assert stats["last_error"] is not None
        assert metrics.get_counter("publish_failures", "blockchain.transactions") == 2

        await publisher.close()

    @pytest.mark.asyncio
    async def test_close_flushes_queue(self, transport):
        publisher = Publisher(transport, kafka_settings(batch_timeout=0.5))
        publisher.start()
        for i in range(3):
            await publisher.publish_transaction(make_tx(tx_hash=f"0x{i:064x}"))

        await publisher.close()

        assert len(transport.messages) == 3
        assert publisher.get_stats()["dropped"] == 0
        assert transport.closed is True

    @pytest.mark.asyncio
    async def test_publish_after_close_rejected(self, transport):
        publisher = Publisher(transport, kafka_settings())
        publisher.start()
        await publisher.close()

        with pytest.raises(PublishError):
            await publisher.publish_transaction(make_tx())
        assert await publisher.health_check() is False

    @pytest.mark.asyncio
    async def test_health_follows_transport(self, transport):
        publisher = Publisher(transport, kafka_settings())
        assert await publisher.health_check() is True

        transport.healthy = False
        assert await publisher.health_check() is False


# ============================================================
# MESSAGES
# ============================================================

class TestMessages:
    """Keys, headers and payloads."""

    def test_transaction_message(self):
        tx = make_tx(block_number=42)
        message = transaction_message(tx, "blockchain.transactions")

        assert message.key == tx.hash
        assert message.headers == {
            "network": "ethereum",
            "block_number": "42",
            "timestamp": str(BASE_TIMESTAMP),
            "message_type": "transaction",
        }
        assert json.loads(message.encode_value())["hash"] == tx.hash

    def test_block_message(self):
        block = Block(
            number=7,
            hash="0xabc",
            parent_hash="0xabb",
            timestamp=datetime.fromtimestamp(BASE_TIMESTAMP, tz=timezone.utc),
            network="polygon",
            transactions=(make_tx(network="polygon"),),
        )
        message = block_message(block, "blockchain.blocks")

        assert message.key == "7"
        assert message.headers["tx_count"] == "1"
        assert message.message_type == "block"

    def test_alert_message(self):
        tx = make_tx(from_address="0x" + "ab" * 20)
        detector = RiskDetector()
        detector.update_blacklist(tx.from_address)
        alert = build_alert(tx, detector.analyze(tx), now_ns=1)
        message = alert_message(alert, "blockchain.alerts")

        assert message.key == f"alert_{tx.hash}_1"
        assert message.headers["alert_type"] == "BLACKLIST"
        assert message.headers["alert_level"] == "CRITICAL"
        assert message.headers["block_number"] == "100"
        assert dict(message.encode_headers())["message_type"] == b"alert"


# ============================================================
# KAFKA TRANSPORT
# ============================================================

class TestKafkaTransport:
    """confluent-kafka producer wrapper."""

    def _transport(self, producer, **kwargs):
        return KafkaTransport(KafkaSettings(brokers="k1:9092, k2:9092"), producer=producer, **kwargs)

    def test_producer_config(self):
        config = self._transport(MagicMock())._producer_config()

        assert config["bootstrap.servers"] == "k1:9092,k2:9092"
        assert config["acks"] == "all"
        assert config["enable.idempotence"] is True

    @pytest.mark.asyncio
    async def test_send_batch_produces_every_message(self):
        producer = MagicMock()
        producer.flush.return_value = 0
        transport = self._transport(producer)
        messages = [transaction_message(make_tx(tx_hash=f"0x{i:064x}"), "t") for i in range(2)]

        await transport.send_batch(messages)

        assert producer.produce.call_count == 2
        kwargs = producer.produce.call_args_list[0].kwargs
        assert kwargs["topic"] == "t"
        assert kwargs["key"] == messages[0].key.encode()
        assert ("message_type", b"transaction") in kwargs["headers"]

    @pytest.mark.asyncio
    async def test_unflushed_messages_fail_batch(self):
        producer = MagicMock()
        producer.flush.return_value = 1
        transport = self._transport(producer)

        with pytest.raises(PublishError):
            await transport.send_batch([transaction_message(make_tx(), "t")])

    @pytest.mark.asyncio
    async def test_delivery_error_fails_batch(self):
        producer = MagicMock()
        producer.flush.return_value = 0
        producer.produce.side_effect = lambda **kw: kw["on_delivery"]("broker down", None)
        transport = self._transport(producer)

        with pytest.raises(PublishError) as exc_info:
            await transport.send_batch([transaction_message(make_tx(), "t")])
        assert "broker down" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_buffer_full_retried_once(self):
        producer = MagicMock()
        producer.flush.return_value = 0
        producer.produce.side_effect = [BufferError("full"), None]
        transport = self._transport(producer)

        await transport.send_batch([transaction_message(make_tx(), "t")])

        assert producer.produce.call_count == 2
        producer.poll.assert_any_call(1.0)

    @pytest.mark.asyncio
    async def test_health_check(self):
        producer = MagicMock()
        transport = self._transport(producer)
        assert await transport.health_check() is True

        producer.list_topics.side_effect = KafkaException("unreachable")
        assert await transport.health_check() is False
