"""
User Cache Manager

Sync orchestrator for the directory mirror. Decides between full and delta
loads from the stored sync metadata, persists loader output through the
storage adapter and serves reads from storage.

Sync cycle:
1. Read metadata, mark InProgress and persist it
2. Full load when there is no delta token or the last full sync is older
   than the full sync interval, otherwise a delta load
3. An expired delta token falls back to a full load in the same cycle
4. On success: Success status, counts and timestamps persisted
5. On failure: Failed status and error persisted (best effort), cached users
   untouched, SyncError raised to sync() callers
"""

import asyncio
from datetime import datetime
from datetime import timezone
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional

from loguru import logger

from usercache.enrichment.stats import CopilotStatsEnricher
from usercache.enums import SyncStatus
from usercache.enums import SyncType
from usercache.errors import DeltaTokenExpiredError
from usercache.errors import SyncError
from usercache.loaders.base import UserDataLoader
from usercache.models import CachedUser
from usercache.models import StatsRefreshResult
from usercache.models import SyncMetadata
from usercache.settings import UserCacheConfig
from usercache.storage.base import CacheStorage


def dedupe_last_wins(users: List[CachedUser]) -> List[CachedUser]:
    """Keep the last record per user_id, ordered by that last occurrence."""
    latest: Dict[str, CachedUser] = {}
    for user in users:
        latest.pop(user.user_id, None)
        latest[user.user_id] = user
    return list(latest.values())


class UserCacheManager:
    """
    Orchestrates directory syncs and statistics enrichment over pluggable
    loader and storage adapters.

    One asyncio.Lock per manager serializes sync cycles and every metadata
    read-modify-write. Reads of cached users never wait on it.
    """

    def __init__(
        self,
        loader: UserDataLoader,
        storage: CacheStorage,
        stats_enricher: CopilotStatsEnricher,
        config: Optional[UserCacheConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            loader: Upstream directory adapter
            storage: Persistence adapter (also holds sync metadata)
            stats_enricher: Usage statistics pass (over FixtureStatsLoader when there is no feed)
            config: Cadence settings (defaults: 1h validity, 7 day full sync, 24h stats)
            clock: Returns the current UTC time (tests pass a controllable clock)
        """
        self.loader = loader
        self.storage = storage
        self.stats_enricher = stats_enricher
        self.config = config or UserCacheConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_all_users(self, force_refresh: bool = False, skip_auto_sync: bool = False) -> List[CachedUser]:
        """
        Return all live (non-tombstoned) cached users, syncing first when stale.

        A failed sync is logged and recorded in metadata; the previously cached
        users are returned.

        Args:
            force_refresh: Sync even if the cache is still valid
            skip_auto_sync: Never sync, just read storage
        """
        if not skip_auto_sync:
            metadata = await self.storage.get_sync_metadata()
            if force_refresh or self._is_cache_stale(metadata):
                async with self._lock:
                    # another caller may have synced while we waited
                    if not force_refresh and not self._is_cache_stale(await self.storage.get_sync_metadata()):
                        logger.debug("Cache refreshed by a concurrent caller, skipping sync")
                    else:
                        try:
                            await self._run_sync_cycle()
                        except SyncError as e:
                            logger.warning("Sync failed, serving previously cached users", error=str(e))

        return await self.storage.get_all_users(include_deleted=False)

    async def get_user(self, upn: str) -> Optional[CachedUser]:
        """Look up one user by UPN (case-insensitive). Never syncs; tombstoned users are returned."""
        return await self.storage.get_user_by_upn(upn)

    async def get_sync_metadata(self) -> SyncMetadata:
        """Current sync metadata, for status reporting."""
        return await self.storage.get_sync_metadata()

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self) -> SyncMetadata:
        """
        Run one sync cycle now, regardless of staleness.

        Returns:
            Metadata persisted at the end of the cycle

        Raises:
            SyncError: the cycle failed (the cause is chained)
        """
        async with self._lock:
            return await self._run_sync_cycle()

    async def clear_cache(self) -> int:
        """Remove every cached user and reset sync metadata. Returns the number of users removed."""
        async with self._lock:
            removed = await self.storage.clear_all()
        logger.info("User cache cleared", removed=removed)
        return removed

    def _is_cache_stale(self, metadata: SyncMetadata) -> bool:
        if metadata.last_delta_sync_at is None:
            return True
        return self._clock() - metadata.last_delta_sync_at >= self.config.cache_expiration

    def _needs_full_sync(self, metadata: SyncMetadata) -> bool:
        if not metadata.has_delta_token or metadata.last_full_sync_at is None:
            return True
        return self._clock() - metadata.last_full_sync_at >= self.config.full_sync_interval

    async def _run_sync_cycle(self) -> SyncMetadata:
        """One sync cycle. Caller holds self._lock."""
        metadata = await self.storage.get_sync_metadata()
        if metadata.last_sync_status == SyncStatus.IN_PROGRESS:
            logger.warning("Previous sync cycle did not finish, starting a new one")

        metadata.last_sync_status = SyncStatus.IN_PROGRESS
        started = metadata.model_copy()

        try:
            await self.storage.update_sync_metadata(metadata)

            if self._needs_full_sync(metadata):
                sync_type = SyncType.FULL
                count = await self._full_sync(metadata)
            else:
                sync_type = SyncType.DELTA
                try:
                    count = await self._delta_sync(metadata)
                except DeltaTokenExpiredError as e:
                    logger.warning("Delta token expired, falling back to full sync", error=str(e))
                    sync_type = SyncType.FULL
                    count = await self._full_sync(metadata)

            metadata.last_sync_status = SyncStatus.SUCCESS
            metadata.last_sync_error = None
            metadata.last_sync_user_count = count
            await self.storage.update_sync_metadata(metadata)

        except Exception as e:
            logger.error("User cache sync failed", error=str(e), error_type=type(e).__name__)
            failed = started.model_copy(update={"last_sync_status": SyncStatus.FAILED, "last_sync_error": str(e)})
            try:
                await self.storage.update_sync_metadata(failed)
            except Exception as write_error:
                logger.error("Could not record sync failure in metadata", error=str(write_error))
            raise SyncError(f"User cache sync failed: {e}") from e

        logger.success("User cache sync completed", sync_type=sync_type.value, users=count)
        return metadata.model_copy()

    async def _full_sync(self, metadata: SyncMetadata) -> int:
        """Load the whole population and re-baseline the delta token. Mutates metadata."""
        logger.info("Starting full user sync")
        result = await self.loader.load_all()
        users = self._prepare_batch(result.users)
        count = await self.storage.upsert_users(users) if users else 0

        if self.config.reconcile_on_full_sync:
            await self._reconcile({user.user_id for user in users})

        now = self._clock()
        metadata.last_full_sync_at = now
        metadata.last_delta_sync_at = now
        metadata.delta_token = result.delta_token
        logger.info("Full user sync applied", users=count, has_delta_token=bool(result.delta_token))
        return count

    async def _delta_sync(self, metadata: SyncMetadata) -> int:
        """Apply changes since the stored delta token. Mutates metadata."""
        logger.info("Starting delta user sync")
        result = await self.loader.load_delta(metadata.delta_token)
        users = self._prepare_batch(result.users)
        count = await self.storage.upsert_users(users) if users else 0

        metadata.last_delta_sync_at = self._clock()
        if result.delta_token:
            metadata.delta_token = result.delta_token
        logger.info(
            "Delta user sync applied",
            changes=count,
            removed=sum(1 for user in users if user.is_deleted),
        )
        return count

    @staticmethod
    def _prepare_batch(users: List[CachedUser]) -> List[CachedUser]:
        deduped = dedupe_last_wins(users)
        if len(deduped) != len(users):
            logger.warning("Loader returned duplicate users, keeping the last record", duplicates=len(users) - len(deduped))
        return deduped

    async def _reconcile(self, snapshot_ids: set) -> None:
        """Tombstone live cached users that are missing from a full snapshot."""
        if not snapshot_ids:
            logger.warning("Full snapshot is empty, skipping reconciliation")
            return
        cached = await self.storage.get_all_users(include_deleted=False)
        absent = [user.user_id for user in cached if user.user_id not in snapshot_ids]
        if absent:
            tombstoned = await self.storage.tombstone_users(absent)
            logger.info("Reconciliation tombstoned users missing from full snapshot", tombstoned=tombstoned)

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------

    async def refresh_enrichment(self, force: bool = False) -> StatsRefreshResult:
        """
        Run one usage statistics pass if the stats refresh interval has elapsed.

        An empty or failed feed is logged and still advances last_stats_refresh_at,
        so the feed is retried after the next interval. GraphAuthError propagates.

        Args:
            force: Ignore the refresh interval
        """
        metadata = await self.storage.get_sync_metadata()
        if not force and metadata.last_stats_refresh_at is not None:
            age = self._clock() - metadata.last_stats_refresh_at
            if age < self.config.stats_refresh_interval:
                logger.debug("Copilot stats are fresh, skipping refresh", age_seconds=int(age.total_seconds()))
                return StatsRefreshResult(ran=False, skipped_reason="Stats refreshed recently")

        outcome = await self.stats_enricher.fetch_stats()
        report = None
        if outcome.success and outcome.records:
            report = await self.stats_enricher.apply_stats(outcome.records)
        else:
            logger.warning(
                "No Copilot stats applied",
                state=outcome.state.value,
                status_code=outcome.status_code,
                error=outcome.error_message,
            )

        async with self._lock:
            metadata = await self.storage.get_sync_metadata()
            metadata.last_stats_refresh_at = self._clock()
            await self.storage.update_sync_metadata(metadata)

        return StatsRefreshResult(ran=True, outcome=outcome, report=report)
