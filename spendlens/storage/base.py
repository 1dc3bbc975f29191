"""
Storage collaborator interface for the classification pipeline.
"""
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from spendlens.schemas import ConfigSnapshot, TransactionRecord


class StorageError(RuntimeError):
    """A read or write against the backing store failed."""


class TransactionStore(ABC):
    """Abstract base class for transaction stores."""

    @abstractmethod
    def fetch_transactions(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        ids: Optional[Iterable[str]] = None,
        include_excluded: bool = True,
    ) -> List[TransactionRecord]:
        """Fetch transactions matching the filters, ordered by date."""
        pass

    @abstractmethod
    def load_config_snapshot(self) -> ConfigSnapshot:
        """Load rules and catalogs as one immutable ConfigSnapshot."""
        pass

    @abstractmethod
    def save_classification(self, transaction_id: str, changes: Dict[str, Any]) -> bool:
        """
        Write classification changes for one transaction.

        Returns True only if a stored value actually changed.
        """
        pass

    @abstractmethod
    def insert_transactions(self, records: Iterable[TransactionRecord]) -> int:
        """Insert normalized records, returning how many were stored."""
        pass
