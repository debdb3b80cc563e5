"""
In-Memory Cache Storage

Dict-backed CacheStorage for tests and single-process local runs.
State is lost when the process exits.
"""

import asyncio
from datetime import datetime
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional

from loguru import logger

from usercache.models import CachedUser
from usercache.models import SyncMetadata
from usercache.models import merge_user
from usercache.storage.base import CacheStorage


class InMemoryCacheStorage(CacheStorage):
    """Stores deep copies so callers can never mutate cached state in place."""

    def __init__(self):
        self._users: Dict[str, CachedUser] = {}
        self._metadata = SyncMetadata()
        self._lock = asyncio.Lock()

    async def get_all_users(self, include_deleted: bool = False) -> List[CachedUser]:
        async with self._lock:
            return [
                user.model_copy(deep=True)
                for user in self._users.values()
                if include_deleted or not user.is_deleted
            ]

    async def get_user_by_upn(self, upn: str) -> Optional[CachedUser]:
        async with self._lock:
            user = self._find_by_upn(upn)
            return user.model_copy(deep=True) if user else None

    async def merge_activity(
        self, upn: str, activity: Dict[str, Optional[datetime]], updated_at: datetime
    ) -> Optional[CachedUser]:
        async with self._lock:
            user = self._find_by_upn(upn)
            if user is None:
                return None
            if not user.is_deleted:
                user = user.model_copy(
                    update={"activity": {**user.activity, **activity}, "last_stats_update": updated_at},
                    deep=True,
                )
                self._users[user.user_id] = user
            return user.model_copy(deep=True)

    async def upsert_user(self, user: CachedUser) -> None:
        async with self._lock:
            self._apply(user)

    async def upsert_users(self, users: List[CachedUser]) -> int:
        async with self._lock:
            for user in users:
                self._apply(user)
        logger.debug("Upserted users into memory cache", count=len(users))
        return len(users)

    async def tombstone_users(self, user_ids: Iterable[str]) -> int:
        changed = 0
        async with self._lock:
            for user_id in user_ids:
                user = self._users.get(user_id)
                if user is not None and not user.is_deleted:
                    self._users[user_id] = user.model_copy(update={"is_deleted": True})
                    changed += 1
        return changed

    async def clear_all(self) -> int:
        async with self._lock:
            removed = len(self._users)
            self._users.clear()
            self._metadata = SyncMetadata()
        logger.info("Memory cache cleared", removed=removed)
        return removed

    async def get_sync_metadata(self) -> SyncMetadata:
        async with self._lock:
            return self._metadata.model_copy(deep=True)

    async def update_sync_metadata(self, metadata: SyncMetadata) -> None:
        async with self._lock:
            self._metadata = metadata.model_copy(deep=True)

    def _find_by_upn(self, upn: str) -> Optional[CachedUser]:
        """Live match first; a tombstoned match only when no live user has the UPN."""
        key = (upn or "").strip().lower()
        if not key:
            return None
        tombstoned = None
        for user in self._users.values():
            if user.upn_key != key:
                continue
            if not user.is_deleted:
                return user
            tombstoned = tombstoned or user
        return tombstoned

    def _apply(self, incoming: CachedUser) -> None:
        self._users[incoming.user_id] = merge_user(self._users.get(incoming.user_id), incoming)
