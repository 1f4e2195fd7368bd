"""
Tests for the BlockSource.

============================================================
TEST PRINCIPLES
============================================================
- Every block between last processed and the head is handled
  exactly once, in ascending order
- Duplicate or stale heads (push + poll overlap) are ignored
- A failing block is retried; the checkpoint never skips it

============================================================
"""

import asyncio

import pytest

from chain_ingestion.block_source import (
    BlockSource,
    HeadInput,
    PollSource,
    PushSource,
    create_head_input,
)
from chain_ingestion.models import SourceKind
from core.exceptions import TransientError
from storage.checkpoint import CheckpointStore
from storage.kv_store import InMemoryKeyValueStore

from conftest import ScriptedConnector, fast_settings, network_settings


class ScriptedHeads(HeadInput):
    """Reports a fixed list of heads, then idles until stopped."""

    kind = SourceKind.PUSH

    def __init__(self, heads):
        super().__init__(fast_settings())
        self._script = list(heads)

    async def run(self, connector, heads, stop):
        for head in self._script:
            heads.put_nowait(head)
        await stop.wait()


@pytest.fixture
def checkpoints():
    return CheckpointStore(InMemoryKeyValueStore())


@pytest.fixture
def connector():
    return ScriptedConnector(network_settings())


def make_source(connector, checkpoints, heads, start_block=None):
    return BlockSource(
        connector,
        checkpoints,
        ScriptedHeads(heads),
        settings=fast_settings(),
        start_block=start_block,
    )


def recording_handler(stop, last, processed, fail_once=()):
    failures = set(fail_once)

    async def handler(number):
        processed.append(number)
        if number in failures:
            failures.discard(number)
            raise TransientError(f"block {number} unavailable")
        if number == last:
            stop.set()

    return handler


class TestHeadTracking:
    """observe() / pending_range() without running the loop."""

    @pytest.mark.asyncio
    async def test_stale_and_duplicate_heads_ignored(self, connector, checkpoints):
        await checkpoints.save("ethereum", 100)
        source = make_source(connector, checkpoints, [])
        await source.initialize(asyncio.Event())

        assert source.observe(103) is True
        assert source.observe(103) is False
        assert source.observe(101) is False
        assert source.observe(99) is False
        assert list(source.pending_range()) == [101, 102, 103]


class TestRun:
    """Ordered, gap-free processing."""

    @pytest.mark.asyncio
    async def test_push_and_poll_duplicates_processed_once(self, connector, checkpoints):
        # N = 100; heads arrive out of order and twice
        await checkpoints.save("ethereum", 100)
        source = make_source(connector, checkpoints, [103, 103, 105, 101, 105])
        stop = asyncio.Event()
        processed = []

        await asyncio.wait_for(source.run(recording_handler(stop, 105, processed), stop), timeout=5)

        assert processed == [101, 102, 103, 104, 105]
        assert source.last_processed == 105
        assert await checkpoints.load("ethereum") == 105
        assert connector.snapshot().last_processed == 105

    @pytest.mark.asyncio
    async def test_failed_block_is_retried_before_next(self, connector, checkpoints):
        await checkpoints.save("ethereum", 10)
        source = make_source(connector, checkpoints, [13])
        stop = asyncio.Event()
        processed = []

        await asyncio.wait_for(
            source.run(recording_handler(stop, 13, processed, fail_once={12}), stop),
            timeout=5,
        )

        assert processed == [11, 12, 12, 13]
        assert await checkpoints.load("ethereum") == 13

    @pytest.mark.asyncio
    async def test_checkpoint_not_advanced_while_failing(self, connector, checkpoints):
        await checkpoints.save("ethereum", 10)
        source = make_source(connector, checkpoints, [12])
        stop = asyncio.Event()
        attempts = []

        async def handler(number):
            attempts.append(number)
            if number == 12:
                if attempts.count(12) >= 3:
                    stop.set()
                raise TransientError("still failing")

        await asyncio.wait_for(source.run(handler, stop), timeout=5)

        assert attempts[0] == 11
        assert set(attempts[1:]) == {12}
        assert await checkpoints.load("ethereum") == 11

    @pytest.mark.asyncio
    async def test_first_run_starts_at_head(self, connector, checkpoints):
        connector.head = 500
        await connector.connect()
        source = make_source(connector, checkpoints, [501])
        stop = asyncio.Event()
        processed = []

        await asyncio.wait_for(source.run(recording_handler(stop, 501, processed), stop), timeout=5)

        assert processed == [500, 501]

    @pytest.mark.asyncio
    async def test_configured_start_block(self, connector, checkpoints):
        source = make_source(connector, checkpoints, [3], start_block=1)
        stop = asyncio.Event()
        processed = []

        await asyncio.wait_for(source.run(recording_handler(stop, 3, processed), stop), timeout=5)

        assert processed == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_checkpoint_wins_over_start_block(self, connector, checkpoints):
        await checkpoints.save("ethereum", 7)
        source = make_source(connector, checkpoints, [8], start_block=1)
        stop = asyncio.Event()
        processed = []

        await asyncio.wait_for(source.run(recording_handler(stop, 8, processed), stop), timeout=5)

        assert processed == [8]

    @pytest.mark.asyncio
    async def test_stop_before_any_head(self, connector, checkpoints):
        await checkpoints.save("ethereum", 1)
        source = make_source(connector, checkpoints, [])
        stop = asyncio.Event()

        task = asyncio.create_task(source.run(recording_handler(stop, -1, []), stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=2)

        assert source.last_processed == 1


class TestPollSource:
    """Polling head input against the scripted chain."""

    @pytest.mark.asyncio
    async def test_poll_source_follows_head(self, connector, checkpoints):
        connector.head = 20
        await connector.connect()
        await checkpoints.save("ethereum", 18)
        source = BlockSource(connector, checkpoints, PollSource(fast_settings()), settings=fast_settings())
        stop = asyncio.Event()
        processed = []

        async def handler(number):
            processed.append(number)
            if number == 20:
                connector.head = 22
            if number == 22:
                stop.set()

        await asyncio.wait_for(source.run(handler, stop), timeout=5)

        assert processed == [19, 20, 21, 22]


class TestRegistry:
    """Source selection by configured kind."""

    def test_create_known_kinds(self):
        assert isinstance(create_head_input("poll", fast_settings()), PollSource)
        assert isinstance(create_head_input("push", fast_settings()), PushSource)

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            create_head_input("carrier-pigeon", fast_settings())
