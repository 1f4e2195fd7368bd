"""
Data Processing - Transaction Deduplicator.

============================================================
RESPONSIBILITY
============================================================
Detects transactions already handled within a recent window.

- One key per (network, tx hash) with a short TTL
- seen() is consulted by the filter
- mark() is called only after a transaction was fully
  handled (aggregated and queued for publishing), so a block
  retried after a partial failure still delivers every
  transaction that did not complete

============================================================
"""

import logging
from typing import Any, Optional

from core.constants import DEDUP_KEY
from core.exceptions import StoreTimeoutError
from storage.kv_store import KeyValueStore


logger = logging.getLogger(__name__)


class TransactionDeduplicator:
    """
    Hash-window deduplication.

    ============================================================
    USAGE
    ============================================================
    ```python
    dedup = TransactionDeduplicator(store, ttl_seconds=300)
    if not await dedup.is_duplicate("ethereum", tx.hash):
        ...  # handle the transaction
        await dedup.mark("ethereum", tx.hash)
    ```
    ============================================================
    """

    DEFAULT_TTL_SECONDS = 300

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        metrics: Optional[Any] = None,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._metrics = metrics
        self._hits = 0
        self._misses = 0

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    @staticmethod
    def _key(network: str, tx_hash: str) -> str:
        return DEDUP_KEY.format(network=network, tx_hash=tx_hash.lower())

    async def seen(self, network: str, tx_hash: str) -> bool:
        """
        Raises:
            StoreTimeoutError: Store unavailable
        """
        found = await self._store.get(self._key(network, tx_hash)) is not None
        if found:
            self._hits += 1
        else:
            self._misses += 1
        return found

    async def mark(self, network: str, tx_hash: str) -> None:
        """
        Raises:
            StoreTimeoutError: Store unavailable
        """
        await self._store.set(self._key(network, tx_hash), "1", ttl_seconds=self._ttl)

    async def is_duplicate(self, network: str, tx_hash: str) -> bool:
        """seen() that treats a store outage as 'not seen'."""
        try:
            return await self.seen(network, tx_hash)
        except StoreTimeoutError as e:
            logger.warning(f"[{network}] Dedup cache unavailable, assuming unseen: {e}")
            if self._metrics is not None:
                self._metrics.record_error(network, e.error_class.value)
            return False

    def get_stats(self) -> dict:
        return {"hits": self._hits, "misses": self._misses, "ttl_seconds": self._ttl}
