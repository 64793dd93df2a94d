from .base import SERVER_TIMESTAMP, CollectionStore, Document, Unsubscribe
from .memory import MemoryCollectionStore
from .sql import SqlCollectionStore


def create_store(database_url: str) -> CollectionStore:
    if database_url.strip().lower().startswith("memory://"):
        return MemoryCollectionStore()
    return SqlCollectionStore(database_url)


__all__ = [
    "SERVER_TIMESTAMP",
    "CollectionStore",
    "Document",
    "MemoryCollectionStore",
    "SqlCollectionStore",
    "Unsubscribe",
    "create_store",
]
