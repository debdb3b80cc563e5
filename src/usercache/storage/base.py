"""Adapter contract for persisting cached users and the sync metadata singleton."""

from abc import ABC
from abc import abstractmethod
from datetime import datetime
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional

from usercache.models import CachedUser
from usercache.models import SyncMetadata


class CacheStorage(ABC):
    """
    Durable store for cached users (keyed by user_id) and one SyncMetadata row.

    Every write is idempotent: upserting the same record twice leaves the same
    state as upserting it once. Implementations raise CacheStorageError on
    backend failures.
    """

    @abstractmethod
    async def get_all_users(self, include_deleted: bool = False) -> List[CachedUser]:
        """All cached users; tombstoned users only when include_deleted is True."""

    @abstractmethod
    async def get_user_by_upn(self, upn: str) -> Optional[CachedUser]:
        """
        Case-insensitive lookup by user principal name.

        Tombstoned users are returned (with is_deleted=True) so callers can
        tell "removed" apart from "never seen".
        """

    @abstractmethod
    async def upsert_user(self, user: CachedUser) -> None:
        """Insert or merge one user (see merge_user for the field rules)."""

    @abstractmethod
    async def upsert_users(self, users: List[CachedUser]) -> int:
        """
        Insert or merge a batch in order; a later record for the same user_id wins.

        Returns:
            Number of records applied
        """

    @abstractmethod
    async def merge_activity(
        self, upn: str, activity: Dict[str, Optional[datetime]], updated_at: datetime
    ) -> Optional[CachedUser]:
        """
        Merge usage activity into the user with this UPN in one atomic write.

        Only activity and last_stats_update change; directory fields and
        is_deleted are left as stored. Tombstoned users are not written.

        Returns:
            The stored user after the write (unchanged if tombstoned), or None
            when no user has this UPN
        """

    @abstractmethod
    async def tombstone_users(self, user_ids: Iterable[str]) -> int:
        """Mark the given users deleted. Returns the number of rows changed."""

    @abstractmethod
    async def clear_all(self) -> int:
        """Remove every user and reset sync metadata. Returns the number of users removed."""

    @abstractmethod
    async def get_sync_metadata(self) -> SyncMetadata:
        """The metadata singleton; a default instance when nothing is stored yet."""

    @abstractmethod
    async def update_sync_metadata(self, metadata: SyncMetadata) -> None:
        """Replace the metadata singleton."""
