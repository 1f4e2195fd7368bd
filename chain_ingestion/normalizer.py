"""
Chain Ingestion - Normalizer.

============================================================
RESPONSIBILITY
============================================================
Pure mapping from raw chain-client objects (web3 AttributeDicts
or plain JSON-RPC dicts) to the canonical Transaction / Block.

- Accepts ints or 0x-hex quantities
- Accepts bytes (HexBytes) or 0x-hex strings for hashes/data
- Lowercases every address
- Classifies contract creation / contract call / token transfer

============================================================
CLASSIFICATION RULES
============================================================
- to is missing                        -> contract creation
- to is set and input is non-empty     -> contract call
- to is set, input >= 4 bytes and the
  selector is ERC-20 transfer          -> token transfer candidate
  (selector match only, no ABI decode)

============================================================
"""

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from chain_ingestion.models import Block, Transaction
from core.constants import ERC20_TRANSFER_SELECTOR
from core.exceptions import NormalizationError


logger = logging.getLogger(__name__)


def to_hex(value: Any) -> str:
    """bytes / HexBytes / str / int -> lowercase 0x-prefixed hex."""
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, int):
        return hex(value)
    text = str(value).strip().lower()
    if not text:
        return ""
    return text if text.startswith("0x") else "0x" + text


def to_quantity(value: Any, default: Optional[int] = 0) -> Optional[int]:
    """int or 0x-hex / decimal string -> int."""
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "big")
    text = str(value).strip()
    if text.startswith(("0x", "0X")):
        return int(text, 16) if len(text) > 2 else 0
    return int(text)


def to_address(value: Any) -> str:
    """Address in canonical lowercase form, '' when missing."""
    if value is None:
        return ""
    return to_hex(value)


def _field(raw: Any, key: str, default: Any = None) -> Any:
    if isinstance(raw, Mapping):
        return raw.get(key, default)
    return getattr(raw, key, default)


class Normalizer:
    """
    Converts raw chain data into canonical entities for one network.

    Stateless apart from the network name; safe to share.
    """

    def __init__(self, network: str) -> None:
        self._network = network

    @property
    def network(self) -> str:
        return self._network

    def normalize_transaction(
        self,
        raw_tx: Any,
        receipt: Optional[Any],
        block_timestamp: datetime,
    ) -> Transaction:
        """
        Normalize a single transaction.

        Args:
            raw_tx: Raw transaction (from a full block)
            receipt: Raw receipt, or None if unavailable
            block_timestamp: Timestamp of the containing block

        Raises:
            NormalizationError: Missing or unparseable field
        """
        tx_hash = to_hex(_field(raw_tx, "hash"))
        if not tx_hash:
            raise NormalizationError("Transaction without hash", network=self._network)

        try:
            to_addr = to_address(_field(raw_tx, "to"))
            input_data = to_hex(_field(raw_tx, "input", _field(raw_tx, "data"))) or "0x"
            tx_type = to_quantity(_field(raw_tx, "type"), 0)
            max_fee = to_quantity(_field(raw_tx, "maxFeePerGas"), None)
            max_priority = to_quantity(_field(raw_tx, "maxPriorityFeePerGas"), None)
            gas_price = to_quantity(_field(raw_tx, "gasPrice"), None)
            if gas_price is None:
                gas_price = max_fee or 0

            status = 1
            gas_used = 0
            logs_count = 0
            contract_address = ""
            if receipt is not None:
                status = to_quantity(_field(receipt, "status"), 1)
                gas_used = to_quantity(_field(receipt, "gasUsed"), 0)
                logs_count = len(_field(receipt, "logs", None) or [])
                contract_address = to_address(_field(receipt, "contractAddress"))

            input_size = (len(input_data) - 2) // 2
            is_creation = to_addr == ""
            is_contract_call = not is_creation and input_size > 0
            is_token_transfer = (
                not is_creation
                and input_size >= 4
                and input_data[:10] == ERC20_TRANSFER_SELECTOR
            )

            return Transaction(
                hash=tx_hash,
                network=self._network,
                block_number=to_quantity(_field(raw_tx, "blockNumber"), 0),
                block_hash=to_hex(_field(raw_tx, "blockHash")),
                transaction_index=to_quantity(_field(raw_tx, "transactionIndex"), 0),
                from_address=to_address(_field(raw_tx, "from")),
                to_address=to_addr,
                value=to_quantity(_field(raw_tx, "value"), 0),
                gas=to_quantity(_field(raw_tx, "gas"), 0),
                gas_price=gas_price,
                gas_used=gas_used,
                nonce=to_quantity(_field(raw_tx, "nonce"), 0),
                input_data=input_data,
                status=status,
                tx_type=tx_type,
                max_fee_per_gas=max_fee if tx_type == 2 else None,
                max_priority_fee_per_gas=max_priority if tx_type == 2 else None,
                logs_count=logs_count,
                timestamp=block_timestamp,
                is_contract_call=is_contract_call,
                is_token_transfer=is_token_transfer,
                is_contract_creation=is_creation,
                contract_address=contract_address if is_creation else "",
            )
        except (TypeError, ValueError) as e:
            raise NormalizationError(
                f"Unparseable transaction field: {e}",
                tx_hash=tx_hash,
                network=self._network,
                original_error=e,
            ) from e

    def block_timestamp(self, raw_block: Any) -> datetime:
        try:
            return datetime.fromtimestamp(to_quantity(_field(raw_block, "timestamp")), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError) as e:
            raise NormalizationError(
                f"Unparseable block timestamp: {e}",
                field_name="timestamp",
                network=self._network,
                original_error=e,
            ) from e

    def normalize_block(self, raw_block: Any, transactions: Iterable[Transaction]) -> Block:
        """
        Normalize a block header around already-normalized transactions.

        Raises:
            NormalizationError: Header cannot be parsed (the block is retried)
        """
        try:
            return Block(
                number=to_quantity(_field(raw_block, "number")),
                hash=to_hex(_field(raw_block, "hash")),
                parent_hash=to_hex(_field(raw_block, "parentHash")),
                timestamp=self.block_timestamp(raw_block),
                network=self._network,
                gas_used=to_quantity(_field(raw_block, "gasUsed"), 0),
                gas_limit=to_quantity(_field(raw_block, "gasLimit"), 0),
                miner=to_address(_field(raw_block, "miner")),
                difficulty=to_quantity(_field(raw_block, "difficulty"), 0),
                size=to_quantity(_field(raw_block, "size"), 0),
                base_fee_per_gas=to_quantity(_field(raw_block, "baseFeePerGas"), None),
                transactions=tuple(transactions),
            )
        except (TypeError, ValueError) as e:
            raise NormalizationError(
                f"Unparseable block header: {e}",
                network=self._network,
                original_error=e,
            ) from e
