"""
Tests for the TransactionDeduplicator.
"""

from unittest.mock import AsyncMock

import pytest

from core.exceptions import StoreTimeoutError
from data_processing.deduplicator import TransactionDeduplicator
from monitoring.metrics import MetricsRecorder
from storage.kv_store import InMemoryKeyValueStore


TX_HASH = "0x" + "cd" * 32


@pytest.fixture
def dedup():
    return TransactionDeduplicator(InMemoryKeyValueStore(), ttl_seconds=300)


class TestDeduplicator:
    """Seen / mark window."""

    @pytest.mark.asyncio
    async def test_unseen_until_marked(self, dedup):
        assert await dedup.seen("ethereum", TX_HASH) is False

        await dedup.mark("ethereum", TX_HASH)

        assert await dedup.seen("ethereum", TX_HASH) is True
        assert dedup.get_stats() == {"hits": 1, "misses": 1, "ttl_seconds": 300}

    @pytest.mark.asyncio
    async def test_seen_does_not_mark(self, dedup):
        await dedup.seen("ethereum", TX_HASH)
        assert await dedup.seen("ethereum", TX_HASH) is False

    @pytest.mark.asyncio
    async def test_hash_case_insensitive(self, dedup):
        await dedup.mark("ethereum", TX_HASH.upper().replace("0X", "0x"))
        assert await dedup.seen("ethereum", TX_HASH)

    @pytest.mark.asyncio
    async def test_scoped_per_network(self, dedup):
        await dedup.mark("ethereum", TX_HASH)
        assert not await dedup.seen("polygon", TX_HASH)

    @pytest.mark.asyncio
    async def test_mark_uses_ttl(self):
        store = AsyncMock()
        dedup = TransactionDeduplicator(store, ttl_seconds=42)

        await dedup.mark("ethereum", TX_HASH)

        store.set.assert_awaited_once_with(f"dedup:ethereum:{TX_HASH}", "1", ttl_seconds=42)


class TestStoreOutage:
    """A dedup outage must not stall the pipeline."""

    @pytest.mark.asyncio
    async def test_outage_treated_as_unseen(self):
        store = AsyncMock()
        store.get.side_effect = StoreTimeoutError("redis down")
        metrics = MetricsRecorder()
        dedup = TransactionDeduplicator(store, metrics=metrics)

        assert await dedup.is_duplicate("ethereum", TX_HASH) is False
        assert metrics.get_counter("errors_total", "ethereum", "transient") == 1

    @pytest.mark.asyncio
    async def test_seen_propagates_outage(self):
        store = AsyncMock()
        store.get.side_effect = StoreTimeoutError("redis down")
        dedup = TransactionDeduplicator(store)

        with pytest.raises(StoreTimeoutError):
            await dedup.seen("ethereum", TX_HASH)
