"""
Tests for the block / transaction time series.

Every query is pinned with an explicit `now` so windows do not
depend on the wall clock.
"""

from datetime import datetime, timezone

import pytest

from chain_ingestion.models import Block
from storage.kv_store import InMemoryKeyValueStore
from storage.timeseries import InMemoryTimeSeriesStore, KeyValueTimeSeriesStore, parse_window

from conftest import BASE_TIMESTAMP, GWEI, ONE_ETH, make_tx


HOUR = 3600
HOUR_START = BASE_TIMESTAMP - BASE_TIMESTAMP % HOUR


def at(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def block(number: int, timestamp: int, network: str = "ethereum", gas_used: int = 21_000) -> Block:
    tx = make_tx(
        tx_hash="0x" + f"{number:064x}",
        network=network,
        block_number=number,
        timestamp=at(timestamp),
    )
    return Block(
        number=number,
        hash="0x" + f"{number:064x}",
        parent_hash="0x" + f"{number - 1:064x}",
        timestamp=at(timestamp),
        network=network,
        gas_used=gas_used,
        gas_limit=30_000_000,
        base_fee_per_gas=GWEI,
        transactions=(tx,),
    )


@pytest.fixture(params=["memory", "store"])
def series(request):
    if request.param == "memory":
        return InMemoryTimeSeriesStore()
    return KeyValueTimeSeriesStore(InMemoryKeyValueStore())


class TestTransactionStats:
    """Accepted transactions in a window."""

    @pytest.mark.asyncio
    async def test_window_figures(self, series):
        await series.write_transaction(make_tx("0x01", timestamp=at(BASE_TIMESTAMP)))
        await series.write_transaction(make_tx(
            "0x02",
            value=2 * ONE_ETH,
            gas_price=4 * GWEI,
            is_contract_call=True,
            status=0,
            timestamp=at(BASE_TIMESTAMP + 600),
        ))
        # After the window end, and on another network
        await series.write_transaction(make_tx("0x03", timestamp=at(BASE_TIMESTAMP + 2 * HOUR)))
        await series.write_transaction(make_tx("0x04", network="polygon", timestamp=at(BASE_TIMESTAMP)))

        stats = await series.transaction_stats("ethereum", HOUR, now=BASE_TIMESTAMP + HOUR)

        assert stats["count"] == 2
        assert stats["total_value"] == str(3 * ONE_ETH)
        assert stats["avg_value"] == str(3 * ONE_ETH // 2)
        assert stats["avg_gas_price"] == str(3 * GWEI)
        assert stats["contract_calls"] == 1
        assert stats["token_transfers"] == 0
        assert stats["failed"] == 1

    @pytest.mark.asyncio
    async def test_empty_window(self, series):
        stats = await series.transaction_stats("ethereum", HOUR, now=BASE_TIMESTAMP)

        assert stats["count"] == 0
        assert stats["total_value"] == "0"
        assert stats["avg_value"] == "0"

    @pytest.mark.asyncio
    async def test_large_values_exact(self, series):
        big = 10 ** 24 + 1
        await series.write_transaction(make_tx("0x01", value=big, timestamp=at(BASE_TIMESTAMP)))
        await series.write_transaction(make_tx("0x02", value=big, timestamp=at(BASE_TIMESTAMP + 1)))

        stats = await series.transaction_stats("ethereum", HOUR, now=BASE_TIMESTAMP + 10)

        assert stats["total_value"] == "2000000000000000000000002"

    @pytest.mark.asyncio
    async def test_redelivery_counted_once(self, series):
        tx = make_tx("0x01", timestamp=at(BASE_TIMESTAMP))
        await series.write_transaction(tx)
        await series.write_transaction(tx)

        stats = await series.transaction_stats("ethereum", HOUR, now=BASE_TIMESTAMP)

        assert stats["count"] == 1


class TestBlockStats:
    """Processed blocks in a window."""

    @pytest.mark.asyncio
    async def test_range_and_block_time(self, series):
        for offset, number in enumerate(range(10, 13)):
            await series.write_block(block(number, BASE_TIMESTAMP + 12 * offset, gas_used=30_000))

        stats = await series.block_stats("ethereum", HOUR, now=BASE_TIMESTAMP + 60)

        assert stats["count"] == 3
        assert stats["first_block"] == 10
        assert stats["last_block"] == 12
        assert stats["total_transactions"] == 3
        assert stats["avg_tx_count"] == 1.0
        assert stats["avg_gas_used"] == 30_000
        assert stats["avg_block_time_seconds"] == 12.0

    @pytest.mark.asyncio
    async def test_single_block_has_no_block_time(self, series):
        await series.write_block(block(10, BASE_TIMESTAMP))

        stats = await series.block_stats("ethereum", HOUR, now=BASE_TIMESTAMP)

        assert stats["count"] == 1
        assert stats["avg_block_time_seconds"] is None

    @pytest.mark.asyncio
    async def test_reprocessed_block_counted_once(self, series):
        await series.write_block(block(10, BASE_TIMESTAMP))
        await series.write_block(block(10, BASE_TIMESTAMP))

        stats = await series.block_stats("ethereum", HOUR, now=BASE_TIMESTAMP)

        assert stats["count"] == 1

    @pytest.mark.asyncio
    async def test_empty_window(self, series):
        stats = await series.block_stats("polygon", HOUR, now=BASE_TIMESTAMP)

        assert stats["count"] == 0
        assert stats["first_block"] is None
        assert stats["avg_block_time_seconds"] is None


class TestTransactionVolume:
    """Value per bucket."""

    @pytest.mark.asyncio
    async def test_buckets_oldest_first(self, series):
        await series.write_transaction(make_tx("0x01", timestamp=at(HOUR_START + 10)))
        await series.write_transaction(make_tx("0x02", value=2 * ONE_ETH, timestamp=at(HOUR_START + 20)))
        await series.write_transaction(make_tx("0x03", timestamp=at(HOUR_START + HOUR + 5)))

        volume = await series.transaction_volume(
            "ethereum", window_seconds=2 * HOUR, bucket_seconds=HOUR, now=HOUR_START + 2 * HOUR,
        )

        assert volume == [
            {"bucket_start": HOUR_START, "count": 2, "value": str(3 * ONE_ETH)},
            {"bucket_start": HOUR_START + HOUR, "count": 1, "value": str(ONE_ETH)},
        ]

    @pytest.mark.asyncio
    async def test_bucket_must_be_positive(self, series):
        with pytest.raises(ValueError):
            await series.transaction_volume("ethereum", bucket_seconds=0, now=BASE_TIMESTAMP)


class TestRetention:
    """Points older than the retention window are dropped on write."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("build", [
        lambda: InMemoryTimeSeriesStore(retention_seconds=HOUR),
        lambda: KeyValueTimeSeriesStore(InMemoryKeyValueStore(), retention_seconds=HOUR),
    ])
    async def test_old_points_trimmed(self, build):
        series = build()
        await series.write_transaction(make_tx("0x01", timestamp=at(BASE_TIMESTAMP)))
        await series.write_transaction(make_tx("0x02", timestamp=at(BASE_TIMESTAMP + 2 * HOUR)))

        stats = await series.transaction_stats("ethereum", 10 * HOUR, now=BASE_TIMESTAMP + 2 * HOUR)

        assert stats["count"] == 1

    @pytest.mark.asyncio
    async def test_points_stored_under_network_key(self):
        store = InMemoryKeyValueStore()
        series = KeyValueTimeSeriesStore(store)

        await series.write_block(block(10, BASE_TIMESTAMP, network="polygon"))

        members = await store.zrangebyscore("timeseries:blocks:polygon", 0, BASE_TIMESTAMP)
        assert len(members) == 1
        assert '"number": 10' in members[0]


class TestParseWindow:
    """Query-string durations."""

    @pytest.mark.parametrize("text, seconds", [
        ("90s", 90),
        ("15m", 900),
        ("1h", 3600),
        ("7d", 604_800),
        ("120", 120),
        (" 2H ", 7200),
    ])
    def test_valid(self, text, seconds):
        assert parse_window(text) == seconds

    @pytest.mark.parametrize("text", ["", "h", "1w", "-5m", "0", "1.5h"])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            parse_window(text)
