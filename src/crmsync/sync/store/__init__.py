"""Persistence backends for the sync engine."""

from src.crmsync.sync.store.base import ENTITY_WRITABLE_FIELDS, SyncStore
from src.crmsync.sync.store.memory import InMemorySyncStore
from src.crmsync.sync.store.postgres import PostgresSyncStore

__all__ = [
    "ENTITY_WRITABLE_FIELDS",
    "InMemorySyncStore",
    "PostgresSyncStore",
    "SyncStore",
]
