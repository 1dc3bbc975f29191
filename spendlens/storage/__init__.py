from spendlens.storage.base import StorageError, TransactionStore
from spendlens.storage.sql_store import SqlTransactionStore

__all__ = ["StorageError", "TransactionStore", "SqlTransactionStore"]
