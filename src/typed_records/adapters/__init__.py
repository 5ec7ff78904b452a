"""Storage adapters."""

from typed_records.adapters.base import StorageAdapter
from typed_records.adapters.memory import InMemoryAdapter
from typed_records.adapters.sqlite import SQLiteAdapter

__all__ = ["InMemoryAdapter", "SQLiteAdapter", "StorageAdapter"]
