"""Storage backends for the Family Bank core."""

from familybank.storage.interface import (
    FinanceStorageInterface,
    StorageConnectionError,
    StorageError,
)
from familybank.storage.memory import InMemoryFinanceStorage
from familybank.storage.sql import SqlFinanceStorage, connect_sql_storage

__all__ = [
    "FinanceStorageInterface",
    "InMemoryFinanceStorage",
    "SqlFinanceStorage",
    "StorageConnectionError",
    "StorageError",
    "connect_sql_storage",
]
