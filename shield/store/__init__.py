"""Store backends.  ``open_store`` picks one from the configured URL."""

from shield.store.base import EventStore, IdentifierStats
from shield.store.memory import InMemoryEventStore


def open_store(url: str, timeout: float = 2.0) -> EventStore:
    """``memory://`` → in-process store; anything else → SQLAlchemy URL."""
    if url == "memory://":
        return InMemoryEventStore(timeout=timeout)
    from shield.store.sql import SqlEventStore

    return SqlEventStore(url, timeout=timeout)


__all__ = ["EventStore", "IdentifierStats", "InMemoryEventStore", "open_store"]
