"""
Chain Ingestion - Block Ingester.

Fetches a full block plus one receipt per transaction and hands
them to the Normalizer.

Failure semantics:
- Block or receipt not available yet -> TransientError (block retried)
- RPC failure / timeout              -> TransientError from the connector
- One malformed transaction          -> logged, counted, skipped
"""

import asyncio
import logging
from collections.abc import Mapping
from typing import Any, Optional

from chain_ingestion.connector import NetworkConnector
from chain_ingestion.models import Block, Transaction
from chain_ingestion.normalizer import Normalizer, to_hex
from core.exceptions import NormalizationError, TransientError


logger = logging.getLogger(__name__)


class BlockIngester:
    """Fetch + normalize one block at a time for a single network."""

    DEFAULT_RECEIPT_CONCURRENCY = 10

    def __init__(
        self,
        connector: NetworkConnector,
        normalizer: Optional[Normalizer] = None,
        metrics: Optional[Any] = None,
        receipt_concurrency: int = DEFAULT_RECEIPT_CONCURRENCY,
    ) -> None:
        self._connector = connector
        self._normalizer = normalizer or Normalizer(connector.name)
        self._metrics = metrics
        self._receipt_semaphore = asyncio.Semaphore(max(1, receipt_concurrency))

    @property
    def network(self) -> str:
        return self._connector.name

    async def fetch(self, number: int) -> Block:
        """
        Fetch and normalize block `number`.

        Raises:
            TransientError: Block/receipt unavailable or RPC failure
            NormalizationError: Block header itself is malformed
        """
        raw_block = await self._connector.block_by_number(number)
        if raw_block is None:
            raise self._unavailable(f"Block {number} not available yet", block_number=number)

        timestamp = self._normalizer.block_timestamp(raw_block)
        raw_txs = [tx for tx in (_get(raw_block, "transactions") or []) if isinstance(tx, Mapping)]

        receipts = await asyncio.gather(*(self._fetch_receipt(tx) for tx in raw_txs))

        transactions: list[Transaction] = []
        for raw_tx, receipt in zip(raw_txs, receipts):
            try:
                transactions.append(
                    self._normalizer.normalize_transaction(raw_tx, receipt, timestamp)
                )
            except NormalizationError as e:
                logger.warning(f"[{self.network}] Skipping transaction in block {number}: {e}")
                if self._metrics is not None:
                    self._metrics.record_error(self.network, e.error_class.value)

        block = self._normalizer.normalize_block(raw_block, transactions)
        logger.debug(f"[{self.network}] Ingested block {block.number} ({block.tx_count} txs)")
        return block

    async def _fetch_receipt(self, raw_tx: Any) -> Any:
        tx_hash = to_hex(_get(raw_tx, "hash"))
        async with self._receipt_semaphore:
            receipt = await self._connector.transaction_receipt(tx_hash)
        if receipt is None:
            raise self._unavailable(f"Receipt for {tx_hash} not available yet", tx_hash=tx_hash)
        return receipt

    def _unavailable(self, message: str, **context: Any) -> TransientError:
        if self._metrics is not None:
            self._metrics.record_error(self.network, "transient")
        return TransientError(message, network=self.network, context=context)


def _get(raw: Any, key: str) -> Any:
    if isinstance(raw, Mapping):
        return raw.get(key)
    return getattr(raw, key, None)
