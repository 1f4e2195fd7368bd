"""
Chain Ingestion - Block Source.

============================================================
PURPOSE
============================================================
Turns observed chain heads into an ordered, gap-free sequence
of block numbers for one network.

============================================================
HEAD INPUTS (tagged variant, chosen once at startup)
============================================================
- PollSource: re-reads latest_block_number every interval (+ jitter)
- PushSource: newHeads subscription, with the poll loop kept
  running as a slower gap detector / fallback

Both inputs only *report* heads into one queue. A single
consumer owns last_processed, so two inputs reporting the same
head concurrently can never produce a duplicate block.

============================================================
ALGORITHM
============================================================
On head H:
    H <= last_processed        -> ignored (duplicate or stale)
    otherwise                  -> process last_processed+1 .. H ascending

A failing block is retried with backoff; last_processed (and
the persisted checkpoint) only advance after success. Only this
network stalls while a block keeps failing.

============================================================
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from chain_ingestion.connector import NetworkConnector
from chain_ingestion.models import SourceKind
from core.config import ConnectorSettings
from core.exceptions import MalformedPayloadError, PipelineError, StoreTimeoutError
from storage.checkpoint import CheckpointStore


logger = logging.getLogger(__name__)

BlockHandler = Callable[[int], Awaitable[Any]]


async def wait_or_stop(stop: asyncio.Event, timeout: float) -> bool:
    """Sleep up to `timeout`; return True if stop was set meanwhile."""
    if timeout <= 0:
        return stop.is_set()
    try:
        await asyncio.wait_for(stop.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        return False
    return True


# ─────────────────────────────────────────────────────────────
# Head inputs
# ─────────────────────────────────────────────────────────────

class HeadInput(ABC):
    """Reports observed head numbers into a queue until stopped."""

    kind: SourceKind

    def __init__(self, settings: ConnectorSettings, metrics: Optional[Any] = None) -> None:
        self._settings = settings
        self._metrics = metrics

    @abstractmethod
    async def run(
        self,
        connector: NetworkConnector,
        heads: "asyncio.Queue[int]",
        stop: asyncio.Event,
    ) -> None:
        pass


class PollSource(HeadInput):
    """Interval polling of latest_block_number."""

    kind = SourceKind.POLL

    def __init__(
        self,
        settings: ConnectorSettings,
        metrics: Optional[Any] = None,
        interval: Optional[float] = None,
    ) -> None:
        super().__init__(settings, metrics)
        self._interval = settings.poll_interval if interval is None else interval

    def _next_delay(self) -> float:
        jitter = self._settings.poll_jitter
        return max(0.0, self._interval + (random.uniform(-jitter, jitter) if jitter else 0.0))

    async def run(
        self,
        connector: NetworkConnector,
        heads: "asyncio.Queue[int]",
        stop: asyncio.Event,
    ) -> None:
        while not stop.is_set():
            try:
                head = await connector.latest_block_number()
                heads.put_nowait(head)
            except PipelineError as e:
                logger.warning(f"[{connector.name}] Poll failed: {e}")
            if await wait_or_stop(stop, self._next_delay()):
                break


class PushSource(HeadInput):
    """newHeads subscription plus a slower poll loop as gap detector."""

    kind = SourceKind.PUSH

    # Poll every N poll intervals while push is active
    FALLBACK_POLL_FACTOR = 3

    def __init__(self, settings: ConnectorSettings, metrics: Optional[Any] = None) -> None:
        super().__init__(settings, metrics)
        self._fallback = PollSource(
            settings,
            metrics,
            interval=settings.poll_interval * self.FALLBACK_POLL_FACTOR,
        )

    async def run(
        self,
        connector: NetworkConnector,
        heads: "asyncio.Queue[int]",
        stop: asyncio.Event,
    ) -> None:
        poll_task = asyncio.create_task(
            self._fallback.run(connector, heads, stop),
            name=f"poll:{connector.name}",
        )
        try:
            await self._subscribe_forever(connector, heads, stop)
        finally:
            poll_task.cancel()
            try:
                await poll_task
            except asyncio.CancelledError:
                pass

    async def _subscribe_forever(
        self,
        connector: NetworkConnector,
        heads: "asyncio.Queue[int]",
        stop: asyncio.Event,
    ) -> None:
        attempt = 0
        while not stop.is_set():
            try:
                async for header in connector.subscribe_heads():
                    attempt = 0
                    heads.put_nowait(header.number)
                    if stop.is_set():
                        return
            except PipelineError as e:
                logger.warning(f"[{connector.name}] Head subscription lost: {e}")
            except Exception as e:
                logger.error(
                    f"[{connector.name}] Head subscription failed unexpectedly: {e}",
                    exc_info=True,
                )
                if self._metrics is not None:
                    self._metrics.record_error(connector.name, "unexpected")

            delay = min(
                self._settings.reconnect_backoff * (2 ** attempt),
                self._settings.max_reconnect_backoff,
            )
            attempt += 1
            if await wait_or_stop(stop, delay):
                break


SOURCE_REGISTRY: dict[SourceKind, type[HeadInput]] = {
    SourceKind.PUSH: PushSource,
    SourceKind.POLL: PollSource,
}


def create_head_input(
    kind: str,
    settings: ConnectorSettings,
    metrics: Optional[Any] = None,
) -> HeadInput:
    """Build the head input for a configured source kind."""
    try:
        source_cls = SOURCE_REGISTRY[SourceKind(kind)]
    except (KeyError, ValueError) as e:
        raise ValueError(f"Unknown block source kind: {kind}") from e
    return source_cls(settings, metrics)


# ─────────────────────────────────────────────────────────────
# Block source
# ─────────────────────────────────────────────────────────────

class BlockSource:
    """
    Ordered, gap-filling block number driver for one network.

    Usage:
        source = BlockSource(connector, checkpoints, create_head_input("poll", settings))
        await source.run(process_block, stop_event)
    """

    def __init__(
        self,
        connector: NetworkConnector,
        checkpoints: CheckpointStore,
        head_input: HeadInput,
        settings: Optional[ConnectorSettings] = None,
        start_block: Optional[int] = None,
        metrics: Optional[Any] = None,
    ) -> None:
        self._connector = connector
        self._checkpoints = checkpoints
        self._head_input = head_input
        self._settings = settings or ConnectorSettings()
        self._start_block = start_block
        self._metrics = metrics

        self._heads: "asyncio.Queue[int]" = asyncio.Queue()
        self._last_processed: Optional[int] = None
        self._highest_head: int = -1
        self._head_task: Optional[asyncio.Task] = None

    @property
    def network(self) -> str:
        return self._connector.name

    @property
    def kind(self) -> SourceKind:
        return self._head_input.kind

    @property
    def last_processed(self) -> Optional[int]:
        return self._last_processed

    @property
    def highest_head(self) -> int:
        return self._highest_head

    async def initialize(self, stop: asyncio.Event) -> bool:
        """
        Resolve the starting point.

        Checkpoint if present, else configured start_block, else
        the current head (processed as the first block).

        Returns:
            False if stopped before a starting point was found
        """
        try:
            checkpoint = await self._checkpoints.load(self.network)
        except (StoreTimeoutError, MalformedPayloadError) as e:
            logger.warning(f"[{self.network}] Checkpoint unavailable, ignoring: {e}")
            checkpoint = None

        if checkpoint is not None:
            self._last_processed = checkpoint
            logger.info(f"[{self.network}] Resuming after checkpoint {checkpoint}")
        elif self._start_block is not None:
            self._last_processed = self._start_block - 1
            logger.info(f"[{self.network}] Starting at configured block {self._start_block}")
        else:
            attempt = 0
            while self._last_processed is None:
                try:
                    head = await self._connector.latest_block_number()
                    self._last_processed = head - 1
                    logger.info(f"[{self.network}] No checkpoint, starting at head {head}")
                except PipelineError as e:
                    delay = self._retry_delay(attempt)
                    attempt += 1
                    logger.warning(f"[{self.network}] Waiting for head ({e}), retry in {delay:.1f}s")
                    if await wait_or_stop(stop, delay):
                        return False

        self._connector.mark_processed(self._last_processed)
        return True

    def observe(self, head: int) -> bool:
        """
        Record an observed head.

        Returns:
            True if the head extends the work range
        """
        if self._last_processed is not None and head <= self._last_processed:
            logger.debug(f"[{self.network}] Ignoring stale head {head}")
            return False
        if head <= self._highest_head:
            return False
        self._highest_head = head
        return True

    def pending_range(self) -> range:
        """Block numbers still to process for the highest observed head."""
        if self._last_processed is None:
            return range(0)
        return range(self._last_processed + 1, self._highest_head + 1)

    async def commit(self, block_number: int) -> None:
        """Advance last_processed after a block fully succeeded."""
        self._last_processed = block_number
        self._connector.mark_processed(block_number)
        if self._metrics is not None:
            self._metrics.set_current_block(self.network, block_number)
        try:
            await self._checkpoints.save(self.network, block_number)
        except StoreTimeoutError as e:
            # In-memory position still advances; next commit persists it
            logger.warning(f"[{self.network}] Checkpoint save failed: {e}")
            if self._metrics is not None:
                self._metrics.record_error(self.network, e.error_class.value)

    async def run(self, handler: BlockHandler, stop: asyncio.Event) -> None:
        """
        Drive `handler` over every block in order until stopped.

        Args:
            handler: Async callable processing one block number
            stop: Root shutdown signal
        """
        if not await self.initialize(stop):
            return

        self._head_task = self._start_head_input(stop)
        logger.info(f"[{self.network}] Block source running ({self.kind.value})")

        try:
            while not stop.is_set():
                head = await self._next_head(stop)
                if head is None:
                    break
                self.observe(head)

                while not stop.is_set() and self._last_processed < self._highest_head:
                    number = self._last_processed + 1
                    if not await self._process_with_retry(number, handler, stop):
                        break
                    self._drain_heads()
                    if self._last_processed < self._highest_head:
                        if await wait_or_stop(stop, self._settings.emit_interval):
                            break
        finally:
            head_task, self._head_task = self._head_task, None
            head_task.cancel()
            try:
                await head_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"[{self.network}] Head input failed during shutdown: {e}")
            logger.info(f"[{self.network}] Block source stopped at {self._last_processed}")

    def _start_head_input(self, stop: asyncio.Event) -> asyncio.Task:
        return asyncio.create_task(
            self._head_input.run(self._connector, self._heads, stop),
            name=f"heads:{self.network}",
        )

    async def _restart_head_input(self, stop: asyncio.Event) -> bool:
        """
        Replace a head input task that exited on its own.

        Returns:
            False if stopped while waiting to restart
        """
        task = self._head_task
        error = None if task.cancelled() else task.exception()
        if error is not None:
            logger.error(
                f"[{self.network}] Head input crashed, restarting: {error}",
                exc_info=error,
            )
            if self._metrics is not None:
                self._metrics.record_error(self.network, "unexpected")
        else:
            logger.warning(f"[{self.network}] Head input exited, restarting")

        if await wait_or_stop(stop, self._settings.reconnect_backoff):
            return False
        self._head_task = self._start_head_input(stop)
        return True

    async def _next_head(self, stop: asyncio.Event) -> Optional[int]:
        """Wait for the next reported head (max of everything queued)."""
        while True:
            get_task = asyncio.ensure_future(self._heads.get())
            stop_task = asyncio.ensure_future(stop.wait())
            try:
                done, _ = await asyncio.wait(
                    {get_task, stop_task, self._head_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                for task in (get_task, stop_task):
                    if not task.done():
                        task.cancel()

            if get_task in done:
                break
            if stop_task in done or stop.is_set():
                return None
            if not await self._restart_head_input(stop):
                return None

        head = get_task.result()
        while not self._heads.empty():
            head = max(head, self._heads.get_nowait())
        return head

    def _drain_heads(self) -> None:
        while not self._heads.empty():
            self.observe(self._heads.get_nowait())

    def _retry_delay(self, attempt: int) -> float:
        return min(
            self._settings.fetch_retry_backoff * (2 ** attempt),
            self._settings.max_fetch_retry_backoff,
        )

    async def _process_with_retry(
        self,
        number: int,
        handler: BlockHandler,
        stop: asyncio.Event,
    ) -> bool:
        attempt = 0
        while not stop.is_set():
            try:
                await handler(number)
            except PipelineError as e:
                delay = self._retry_delay(attempt)
                logger.warning(
                    f"[{self.network}] Block {number} failed "
                    f"(attempt {attempt + 1}), retry in {delay:.1f}s: {e}"
                )
            except Exception as e:
                delay = self._retry_delay(attempt)
                logger.error(
                    f"[{self.network}] Unexpected error on block {number}, retry in {delay:.1f}s: {e}",
                    exc_info=True,
                )
                if self._metrics is not None:
                    self._metrics.record_error(self.network, "unexpected")
            else:
                await self.commit(number)
                return True

            attempt += 1
            if await wait_or_stop(stop, delay):
                return False
        return False
