"""
Cache Module

Sync orchestrator and its wiring.
"""

from usercache.cache.factory import build_user_cache_manager
from usercache.cache.manager import UserCacheManager

__all__ = [
    "UserCacheManager",
    "build_user_cache_manager",
]
