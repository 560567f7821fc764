"""Job and worker record stores."""

from typing import Optional

from encodefleet.core.config import Settings, get_settings
from encodefleet.store.base import JobStore
from encodefleet.store.memory import MemoryStore


def get_store(settings: Optional[Settings] = None) -> JobStore:
    """Build the store named by ``settings.STORE_BACKEND``."""
    settings = settings or get_settings()
    if settings.STORE_BACKEND == "memory":
        return MemoryStore()

    from encodefleet.core.database import Database
    from encodefleet.store.mongo import MongoStore

    return MongoStore(Database.connect(settings))


__all__ = ["JobStore", "MemoryStore", "get_store"]
