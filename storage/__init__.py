"""
Persistence for scan runs, matches and rotation history.
"""

from storage.base import ScanKind, ScanStore, StoreError
from storage.factory import create_store
from storage.memory import InMemoryStore

__all__ = [
    "ScanKind",
    "ScanStore",
    "StoreError",
    "create_store",
    "InMemoryStore",
]
