"""
Store Factory: Create the queue store backend from configuration.

    STORE_BACKEND=sql      Same database as DATABASE_URL (default for production)
    STORE_BACKEND=memory   In-memory dicts (development, testing)

Usage:
    from mailqueue.store.factory import create_store, get_store
    store = create_store("memory")   # Create explicitly
    store = get_store()              # Get singleton instance
"""
from __future__ import annotations

import logging
from typing import Optional

from mailqueue.core.config import settings
from mailqueue.store.base import BaseQueueStore

logger = logging.getLogger(__name__)

_instance: Optional[BaseQueueStore] = None


def create_store(backend: Optional[str] = None, create_tables: bool = True) -> BaseQueueStore:
    """
    Factory: create the appropriate queue store backend.

    Args:
        backend: "sql" | "memory" (default: settings.STORE_BACKEND)
        create_tables: create the queue tables on the SQL backend if missing
    """
    backend = (backend or settings.STORE_BACKEND).lower()

    if backend == "sql":
        from mailqueue.core.database import init_db
        from mailqueue.store.sql import SqlQueueStore
        if create_tables:
            init_db()
        store = SqlQueueStore()
    elif backend == "memory":
        from mailqueue.store.memory import InMemoryQueueStore
        store = InMemoryQueueStore()
    else:
        raise ValueError(f"Unknown store backend: {backend}")

    logger.info(f"Queue store created (backend={backend})")
    return store


def get_store() -> BaseQueueStore:
    """Return the singleton store instance, creating it from settings if needed."""
    global _instance
    if _instance is None:
        _instance = create_store()
    return _instance


def reset_store() -> None:
    """Drop the singleton (tests and reconfiguration)."""
    global _instance
    _instance = None
