"""
Abstract interfaces for the two external collaborators of a sync job.

Extractor: pulls account data from the upstream financial API.
WalletStore: persists extracted data in the destination wallet.

Extractors raise errors from monzo_connector.utils.errors so the retry engine
can classify them. Wallet stores never raise for write failures; they return
a StoreResult describing the outcome.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class StoreOutcome(str, Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"  # wallet already holds identical data
    FAILED = "failed"


@dataclass
class StoreResult:
    outcome: StoreOutcome
    record_id: Optional[str] = None
    namespace: Optional[str] = None
    path: Optional[str] = None
    error: Optional[str] = None
    data_size: Optional[int] = None

    @property
    def stored(self) -> bool:
        return self.outcome in (StoreOutcome.STORED, StoreOutcome.DUPLICATE)

    def to_dict(self) -> dict:
        return {
            "stored": self.stored,
            "outcome": self.outcome.value,
            "recordId": self.record_id,
            "namespace": self.namespace,
            "error": self.error,
        }


class Extractor(ABC):
    """Upstream financial API."""

    @abstractmethod
    async def extract(self, user_identifier: str) -> dict:
        """
        Fetch the user's account data.
        Returns: {"accounts": list, "balances": list, "transactions": list, ...}
        """
        ...


class WalletStore(ABC):
    """Destination data wallet."""

    @abstractmethod
    async def store(self, data: dict, record_name: str) -> StoreResult:
        """Persist data. Returns a StoreResult; does not raise on write failure."""
        ...
