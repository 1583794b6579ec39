"""
Persistence package for the Broker Service.

Key-value stores (in-memory and Redis) with compare-and-swap, plus the key
layout shared by every broker component.
"""

from .store import (
    KeyValueStore,
    MemoryStore,
    RedisStore,
    atomic_update,
    create_store,
)

__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "RedisStore",
    "atomic_update",
    "create_store",
]
