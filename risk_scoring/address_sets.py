"""
Risk Scoring - Address Sets.

Read-mostly address membership used by the detector for the
blacklist and the suspicious-contract list. Sets are injected,
so rule updates need no restart and tests can substitute
fixtures.
"""

import logging
from abc import ABC, abstractmethod
from typing import FrozenSet, Iterable, Iterator


logger = logging.getLogger(__name__)


# Known exploit addresses
DEFAULT_BLACKLIST = (
    "0x7f367cc41522ce07553e823bf3be79a889debe1b",
    "0x098b716b8aaf21512996dc57eb0615e2383e2f96",
)

# Placeholder contract addresses flagged for interaction monitoring
DEFAULT_SUSPICIOUS_CONTRACTS = (
    "0x1234567890abcdef1234567890abcdef12345678",
    "0xabcdef1234567890abcdef1234567890abcdef12",
)


class AddressSet(ABC):
    """Case-insensitive address membership."""

    @abstractmethod
    def contains(self, address: str) -> bool:
        pass

    @abstractmethod
    def add(self, address: str) -> None:
        pass

    @abstractmethod
    def discard(self, address: str) -> None:
        pass

    @abstractmethod
    def snapshot(self) -> FrozenSet[str]:
        pass

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and self.contains(address)

    def __iter__(self) -> Iterator[str]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        return len(self.snapshot())


class InMemoryAddressSet(AddressSet):
    """
    Copy-on-write set.

    Readers always see a complete frozenset; writers replace it.
    """

    def __init__(self, addresses: Iterable[str] = (), name: str = "addresses") -> None:
        self._name = name
        self._members: FrozenSet[str] = frozenset(a.lower() for a in addresses if a)

    @classmethod
    def blacklist(cls, extra: Iterable[str] = ()) -> "InMemoryAddressSet":
        return cls((*DEFAULT_BLACKLIST, *extra), name="blacklist")

    @classmethod
    def suspicious_contracts(cls, extra: Iterable[str] = ()) -> "InMemoryAddressSet":
        return cls((*DEFAULT_SUSPICIOUS_CONTRACTS, *extra), name="suspicious_contracts")

    def contains(self, address: str) -> bool:
        return bool(address) and address.lower() in self._members

    def add(self, address: str) -> None:
        if not address:
            return
        self._members = self._members | {address.lower()}
        logger.info(f"[{self._name}] Added {address.lower()}")

    def discard(self, address: str) -> None:
        if not address:
            return
        self._members = self._members - {address.lower()}
        logger.info(f"[{self._name}] Removed {address.lower()}")

    def snapshot(self) -> FrozenSet[str]:
        return self._members
