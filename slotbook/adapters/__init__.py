"""
Adapters layer - Storage implementations.
"""

from .memory_store import MemoryStorage
from .sql_store import SqlStorage
from .storage import StorageProtocol, TransactionProtocol

__all__ = ["MemoryStorage", "SqlStorage", "StorageProtocol", "TransactionProtocol"]
