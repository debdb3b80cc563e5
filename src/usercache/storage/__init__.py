"""
Storage Module

Persistence adapters for cached users and sync metadata.
"""

from usercache.storage.base import CacheStorage
from usercache.storage.memory_storage import InMemoryCacheStorage
from usercache.storage.pool import CacheDBPool
from usercache.storage.postgres_storage import PostgresCacheStorage

__all__ = [
    "CacheStorage",
    "InMemoryCacheStorage",
    "CacheDBPool",
    "PostgresCacheStorage",
]
