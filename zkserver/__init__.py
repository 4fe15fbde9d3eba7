"""Untrusted storage side: blobs, encrypted entries and token postings."""

from .server import LogServer
from .storage import MemoryStorage, SqliteStorage, StorageBackend

__all__ = ["LogServer", "MemoryStorage", "SqliteStorage", "StorageBackend"]
