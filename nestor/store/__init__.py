"""Persistent store interface and SQLite implementation."""

from nestor.store.interface import ContactStatus, SessionCheckpoint, Store
from nestor.store.sqlite import SqliteStore

__all__ = ["ContactStatus", "SessionCheckpoint", "SqliteStore", "Store"]
