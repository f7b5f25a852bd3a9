from .base import BaseQueueStore
from .factory import create_store, get_store

__all__ = ["BaseQueueStore", "create_store", "get_store"]
