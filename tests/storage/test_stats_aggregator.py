"""
Tests for the StatsAggregator.

============================================================
TEST PRINCIPLES
============================================================
- Concurrent updates to one address never lose increments
- first_seen / last_seen / max are merge-safe in any order
- Redelivery of the same transaction counts it again

============================================================
"""

import asyncio
from datetime import datetime, timezone

import pytest

from storage.kv_store import InMemoryKeyValueStore
from storage.stats_aggregator import StatsAggregator

from conftest import BASE_TIMESTAMP, ONE_ETH, RECIPIENT, SENDER, make_tx

from chain_ingestion.models import Block


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def aggregator(store):
    return StatsAggregator(store, high_risk_retention=3)


def ts(offset: int) -> datetime:
    return datetime.fromtimestamp(BASE_TIMESTAMP + offset, tz=timezone.utc)


class TestAddressProfiles:
    """Incremental per-address merge."""

    @pytest.mark.asyncio
    async def test_both_sides_updated(self, aggregator):
        await aggregator.record_transaction(make_tx(value=2 * ONE_ETH))

        sender = await aggregator.get_profile(SENDER, "ethereum")
        recipient = await aggregator.get_profile(RECIPIENT, "ethereum")

        assert sender.sent_count == 1
        assert sender.received_count == 0
        assert sender.sent_volume == 2 * ONE_ETH
        assert recipient.received_count == 1
        assert recipient.received_volume == 2 * ONE_ETH
        assert sender.first_seen == sender.last_seen == BASE_TIMESTAMP

    @pytest.mark.asyncio
    async def test_contract_creation_updates_sender_only(self, aggregator, store):
        await aggregator.record_transaction(make_tx(to_address=""))

        assert (await aggregator.get_profile(SENDER, "ethereum")).sent_count == 1
        assert len(store._hashes) == 1

    @pytest.mark.asyncio
    async def test_out_of_order_timestamps(self, aggregator):
        await aggregator.update(SENDER, "ethereum", ONE_ETH, True, ts(100))
        await aggregator.update(SENDER, "ethereum", 5 * ONE_ETH, True, ts(10))
        await aggregator.update(SENDER, "ethereum", 2 * ONE_ETH, False, ts(50))

        profile = await aggregator.get_profile(SENDER, "ethereum")

        assert profile.first_seen == BASE_TIMESTAMP + 10
        assert profile.last_seen == BASE_TIMESTAMP + 100
        assert profile.max_single_tx == 5 * ONE_ETH
        assert profile.total_count == 3
        assert profile.avg_tx_value == pytest.approx(8 * ONE_ETH / 3)

    @pytest.mark.asyncio
    async def test_concurrent_updates_not_lost(self, aggregator):
        await asyncio.gather(*(
            aggregator.update(SENDER, "ethereum", ONE_ETH, True, ts(i))
            for i in range(50)
        ))

        profile = await aggregator.get_profile(SENDER, "ethereum")

        assert profile.sent_count == 50
        assert profile.sent_volume == 50 * ONE_ETH
        assert profile.first_seen == BASE_TIMESTAMP
        assert profile.last_seen == BASE_TIMESTAMP + 49

    @pytest.mark.asyncio
    async def test_wei_volumes_stay_exact(self, aggregator):
        await aggregator.update(SENDER, "ethereum", 10 ** 21, True, ts(0))
        await aggregator.update(SENDER, "ethereum", 1, True, ts(1))
        await aggregator.update(SENDER, "ethereum", 10 ** 21 + 7, True, ts(2))

        profile = await aggregator.get_profile(SENDER, "ethereum")

        assert profile.sent_volume == 2 * 10 ** 21 + 8
        assert profile.max_single_tx == 10 ** 21 + 7
        assert profile.to_dict()["sent_volume"] == "2000000000000000000008"

    @pytest.mark.asyncio
    async def test_redelivery_counts_twice(self, aggregator):
        tx = make_tx()
        await aggregator.record_transaction(tx)
        await aggregator.record_transaction(tx)

        assert (await aggregator.get_profile(SENDER, "ethereum")).sent_count == 2

    @pytest.mark.asyncio
    async def test_address_lookup_case_insensitive(self, aggregator):
        await aggregator.update("0xABCDEF0000000000000000000000000000000001", "ethereum", 1, True, ts(0))

        profile = await aggregator.get_profile("0xabcdef0000000000000000000000000000000001", "ethereum")
        assert profile.sent_count == 1

    @pytest.mark.asyncio
    async def test_profiles_scoped_per_network(self, aggregator):
        await aggregator.update(SENDER, "ethereum", 1, True, ts(0))
        assert (await aggregator.get_profile(SENDER, "polygon")).total_count == 0

    @pytest.mark.asyncio
    async def test_suspicious_counter(self, aggregator):
        assert await aggregator.record_suspicious(SENDER, "ethereum") == 1
        assert await aggregator.record_suspicious(SENDER, "ethereum") == 2
        assert (await aggregator.get_profile(SENDER, "ethereum")).suspicious_count == 2


class TestNetworkRecords:
    """Latest block and high-risk index."""

    @pytest.mark.asyncio
    async def test_latest_block_last_write_wins(self, aggregator):
        first = Block(number=10, hash="0xaaa", parent_hash="0x9", timestamp=ts(0), network="ethereum")
        reorg = Block(number=10, hash="0xbbb", parent_hash="0x9", timestamp=ts(1), network="ethereum")

        await aggregator.update_latest_block(first)
        await aggregator.update_latest_block(reorg)

        latest = await aggregator.get_latest_block("ethereum")
        assert latest["number"] == "10"
        assert latest["hash"] == "0xbbb"

    @pytest.mark.asyncio
    async def test_high_risk_index_newest_first_and_trimmed(self, aggregator):
        for i in range(5):
            tx = make_tx(tx_hash=f"0x{i:064x}", timestamp=ts(i))
            await aggregator.record_high_risk(tx, {"risk_score": 0.8})

        entries = await aggregator.get_high_risk("ethereum")

        assert [e["hash"] for e in entries] == [f"0x{i:064x}" for i in (4, 3, 2)]
        assert entries[0]["risk_score"] == 0.8
