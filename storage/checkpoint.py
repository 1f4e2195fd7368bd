"""
Storage - Block Checkpoints.

Persists the last fully processed block per network in the
shared key-value store so a restart resumes at last + 1.
"""

import logging
from typing import Optional

from core.constants import CHECKPOINT_KEY
from core.exceptions import MalformedPayloadError
from storage.kv_store import KeyValueStore


logger = logging.getLogger(__name__)


class CheckpointStore:
    """Last-processed block number per network."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def load(self, network: str) -> Optional[int]:
        """Return the checkpoint, or None on first run."""
        raw = await self._store.get(CHECKPOINT_KEY.format(network=network))
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError as e:
            raise MalformedPayloadError(
                f"Corrupt checkpoint value {raw!r}",
                network=network,
                original_error=e,
            ) from e

    async def save(self, network: str, block_number: int) -> None:
        await self._store.set(CHECKPOINT_KEY.format(network=network), str(block_number))
        logger.debug(f"[{network}] Checkpoint -> {block_number}")
