"""Unit tests for cache/manager.py.

Covers the full/delta decision, staleness handling, failure recording,
expired token fallback, tombstones, reconciliation and the stats refresh cadence.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from tests.fixtures.cache_fixtures import make_tombstone
from tests.fixtures.cache_fixtures import make_user
from usercache.cache.manager import UserCacheManager
from usercache.cache.manager import dedupe_last_wins
from usercache.enrichment.stats import CopilotStatsEnricher
from usercache.enrichment.stats_loaders import FixtureStatsLoader
from usercache.enums import ItemOutcome
from usercache.enums import StatsFeedState
from usercache.enums import SyncStatus
from usercache.errors import CacheStorageError
from usercache.errors import DataLoadError
from usercache.errors import DeltaTokenExpiredError
from usercache.errors import GraphAuthError
from usercache.errors import SyncError
from usercache.loaders.fixture_loader import FixtureUserDataLoader
from usercache.models import CopilotUsageRecord
from usercache.models import StatsLoadOutcome
from usercache.models import SyncMetadata
from usercache.models import UserLoadResult
from usercache.settings import UserCacheConfig
from usercache.storage.memory_storage import InMemoryCacheStorage

THREE_USERS = [make_user("u1"), make_user("u2"), make_user("u3")]


def build_manager(loader, storage, clock, config=None, stats_enricher=None):
    return UserCacheManager(
        loader=loader,
        storage=storage,
        stats_enricher=stats_enricher or CopilotStatsEnricher(FixtureStatsLoader(), storage, clock=clock),
        config=config or UserCacheConfig(),
        clock=clock,
    )


class TestConcreteScenarios:
    """End-to-end cycles against the fixture loader and in-memory storage."""

    @pytest.mark.asyncio
    async def test_full_then_delta_updates_one_user(self, memory_storage, clock):
        """Bootstrap with T1, then a delta under T1 updates one user and stores T2."""
        loader = FixtureUserDataLoader(
            full_results=[UserLoadResult(users=THREE_USERS, delta_token="T1")],
            delta_results={
                "T1": UserLoadResult(users=[make_user("u2", display_name="Renamed Two")], delta_token="T2"),
            },
        )
        manager = build_manager(loader, memory_storage, clock)

        await manager.sync()
        users = await manager.get_all_users()
        assert sorted(u.user_id for u in users) == ["u1", "u2", "u3"]

        clock.advance(minutes=5)
        await manager.sync()

        users = {u.user_id: u for u in await manager.get_all_users()}
        assert len(users) == 3
        assert users["u2"].display_name == "Renamed Two"
        assert users["u1"].display_name == "U1"
        assert loader.delta_tokens_requested == ["T1"]

        metadata = await manager.get_sync_metadata()
        assert metadata.delta_token == "T2"
        assert metadata.last_sync_status == SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_delta_tombstone_hides_user_but_keeps_record(self, memory_storage, clock):
        """A removed user drops out of get_all_users but get_user still returns it flagged."""
        loader = FixtureUserDataLoader(
            full_results=[UserLoadResult(users=THREE_USERS, delta_token="T1")],
            delta_results={"T1": UserLoadResult(users=[make_tombstone("u3")], delta_token="T2")},
        )
        manager = build_manager(loader, memory_storage, clock)

        await manager.sync()
        await manager.sync()

        users = await manager.get_all_users()
        assert sorted(u.user_id for u in users) == ["u1", "u2"]

        removed = await manager.get_user("U3@Contoso.com")
        assert removed is not None
        assert removed.is_deleted is True
        assert removed.display_name == "U3"

        raw = await memory_storage.get_all_users(include_deleted=True)
        assert len(raw) == 3


class TestSyncDecision:
    """Tests for choosing between full and delta loads."""

    @pytest.mark.asyncio
    async def test_bootstrap_uses_full_load_and_stores_token(self, memory_storage, clock):
        """Empty metadata -> load_all, never load_delta."""
        loader = FixtureUserDataLoader(full_results=[UserLoadResult(users=THREE_USERS, delta_token="T1")])
        manager = build_manager(loader, memory_storage, clock)

        metadata = await manager.sync()

        assert loader.load_all_calls == 1
        assert loader.delta_tokens_requested == []
        assert metadata.delta_token == "T1"
        assert metadata.last_full_sync_at == clock.now
        assert metadata.last_delta_sync_at == clock.now
        assert metadata.last_sync_user_count == 3

    @pytest.mark.asyncio
    async def test_delta_continuation_passes_stored_token(self, memory_storage, clock):
        """A valid token inside the full sync interval -> load_delta(token)."""
        await memory_storage.update_sync_metadata(
            SyncMetadata(delta_token="stored-token", last_full_sync_at=clock.now, last_delta_sync_at=clock.now)
        )
        loader = FixtureUserDataLoader(delta_results={"stored-token": UserLoadResult(users=[], delta_token="next")})
        manager = build_manager(loader, memory_storage, clock)

        clock.advance(hours=2)
        metadata = await manager.sync()

        assert loader.delta_tokens_requested == ["stored-token"]
        assert loader.load_all_calls == 0
        assert metadata.delta_token == "next"
        assert metadata.last_delta_sync_at == clock.now

    @pytest.mark.asyncio
    async def test_full_sync_interval_elapsed_forces_full_load(self, memory_storage, clock):
        """Token present but last full sync older than the interval -> load_all."""
        await memory_storage.update_sync_metadata(
            SyncMetadata(delta_token="old", last_full_sync_at=clock.now, last_delta_sync_at=clock.now)
        )
        loader = FixtureUserDataLoader(full_results=[UserLoadResult(users=THREE_USERS, delta_token="fresh")])
        manager = build_manager(loader, memory_storage, clock)

        clock.advance(days=7)
        metadata = await manager.sync()

        assert loader.load_all_calls == 1
        assert loader.delta_tokens_requested == []
        assert metadata.delta_token == "fresh"
        assert metadata.last_full_sync_at == clock.now

    @pytest.mark.asyncio
    async def test_delta_keeps_old_token_when_loader_returns_none(self, memory_storage, clock):
        """A delta result without a token leaves the stored token in place."""
        await memory_storage.update_sync_metadata(
            SyncMetadata(delta_token="T1", last_full_sync_at=clock.now, last_delta_sync_at=clock.now)
        )
        loader = FixtureUserDataLoader(delta_results={"T1": UserLoadResult(users=[make_user("u1")])})
        manager = build_manager(loader, memory_storage, clock)

        metadata = await manager.sync()

        assert metadata.delta_token == "T1"

    @pytest.mark.asyncio
    async def test_expired_token_falls_back_to_full_load(self, memory_storage, clock):
        """DeltaTokenExpiredError -> load_all in the same cycle, Success and a fresh token."""
        await memory_storage.update_sync_metadata(
            SyncMetadata(delta_token="expired", last_full_sync_at=clock.now, last_delta_sync_at=clock.now)
        )
        loader = FixtureUserDataLoader(
            full_results=[UserLoadResult(users=THREE_USERS, delta_token="rebased")],
            delta_results={"expired": DeltaTokenExpiredError("410 Gone", status_code=410)},
        )
        manager = build_manager(loader, memory_storage, clock)

        metadata = await manager.sync()

        assert loader.delta_tokens_requested == ["expired"]
        assert loader.load_all_calls == 1
        assert metadata.last_sync_status == SyncStatus.SUCCESS
        assert metadata.delta_token == "rebased"
        assert len(await manager.get_all_users(skip_auto_sync=True)) == 3

    @pytest.mark.asyncio
    async def test_interrupted_cycle_is_retried(self, memory_storage, clock):
        """A leftover InProgress status does not block the next cycle."""
        await memory_storage.update_sync_metadata(SyncMetadata(last_sync_status=SyncStatus.IN_PROGRESS))
        loader = FixtureUserDataLoader(full_results=[UserLoadResult(users=THREE_USERS, delta_token="T1")])
        manager = build_manager(loader, memory_storage, clock)

        metadata = await manager.sync()

        assert loader.load_all_calls == 1
        assert metadata.last_sync_status == SyncStatus.SUCCESS


class TestSyncFailures:
    """Tests for failure recording and propagation."""

    @pytest.mark.asyncio
    async def test_sync_raises_and_records_failure(self, memory_storage, clock):
        """A load failure is recorded as Failed and surfaces as SyncError to sync() callers."""
        loader = FixtureUserDataLoader(full_results=[DataLoadError("503 Service Unavailable", status_code=503)])
        manager = build_manager(loader, memory_storage, clock)

        with pytest.raises(SyncError) as exc_info:
            await manager.sync()

        assert isinstance(exc_info.value.__cause__, DataLoadError)
        metadata = await manager.get_sync_metadata()
        assert metadata.last_sync_status == SyncStatus.FAILED
        assert "503" in metadata.last_sync_error
        assert metadata.delta_token is None
        assert metadata.last_delta_sync_at is None

    @pytest.mark.asyncio
    async def test_failed_delta_leaves_cache_and_token_untouched(self, memory_storage, clock):
        """Cached users, token and timestamps survive a failed cycle."""
        loader = FixtureUserDataLoader(
            full_results=[UserLoadResult(users=THREE_USERS, delta_token="T1")],
            delta_results={"T1": DataLoadError("throttled", status_code=429)},
        )
        manager = build_manager(loader, memory_storage, clock)
        first = await manager.sync()

        clock.advance(minutes=30)
        with pytest.raises(SyncError):
            await manager.sync()

        metadata = await manager.get_sync_metadata()
        assert metadata.delta_token == "T1"
        assert metadata.last_delta_sync_at == first.last_delta_sync_at
        assert metadata.last_sync_status == SyncStatus.FAILED
        assert len(await memory_storage.get_all_users()) == 3

    @pytest.mark.asyncio
    async def test_get_all_users_serves_stale_data_on_failure(self, memory_storage, clock):
        """get_all_users swallows the sync failure and returns what is cached."""
        loader = FixtureUserDataLoader(
            full_results=[UserLoadResult(users=THREE_USERS, delta_token="T1")],
            delta_results={"T1": DataLoadError("network down")},
        )
        manager = build_manager(loader, memory_storage, clock)
        await manager.sync()

        clock.advance(hours=2)
        users = await manager.get_all_users()

        assert len(users) == 3
        metadata = await manager.get_sync_metadata()
        assert metadata.last_sync_status == SyncStatus.FAILED
        assert metadata.last_sync_error == "network down"

    @pytest.mark.asyncio
    async def test_storage_failure_during_upsert_is_a_cycle_failure(self, memory_storage, clock):
        """CacheStorageError mid-cycle -> Failed status and SyncError."""
        loader = FixtureUserDataLoader(full_results=[UserLoadResult(users=THREE_USERS, delta_token="T1")])
        memory_storage.upsert_users = AsyncMock(side_effect=CacheStorageError("disk full"))
        manager = build_manager(loader, memory_storage, clock)

        with pytest.raises(SyncError):
            await manager.sync()

        metadata = await memory_storage.get_sync_metadata()
        assert metadata.last_sync_status == SyncStatus.FAILED
        assert metadata.last_sync_error == "disk full"

    @pytest.mark.asyncio
    async def test_failure_metadata_write_is_best_effort(self, memory_storage, clock):
        """If recording the failure also fails, the original error still surfaces."""
        loader = FixtureUserDataLoader(full_results=[DataLoadError("upstream down")])
        manager = build_manager(loader, memory_storage, clock)
        original_update = memory_storage.update_sync_metadata

        async def update(metadata):
            if metadata.last_sync_status == SyncStatus.FAILED:
                raise CacheStorageError("metadata table unavailable")
            await original_update(metadata)

        memory_storage.update_sync_metadata = update

        with pytest.raises(SyncError) as exc_info:
            await manager.sync()

        assert isinstance(exc_info.value.__cause__, DataLoadError)

    @pytest.mark.asyncio
    async def test_unexpected_metadata_write_error_keeps_sync_error(self, memory_storage, clock):
        """A non-storage error while recording the failure (pool not initialized) is logged, not raised."""
        loader = FixtureUserDataLoader(full_results=[DataLoadError("upstream down")])
        manager = build_manager(loader, memory_storage, clock)
        original_update = memory_storage.update_sync_metadata

        async def update(metadata):
            if metadata.last_sync_status == SyncStatus.FAILED:
                raise RuntimeError("Database pool not initialized")
            await original_update(metadata)

        memory_storage.update_sync_metadata = update

        with pytest.raises(SyncError) as exc_info:
            await manager.sync()
        assert isinstance(exc_info.value.__cause__, DataLoadError)

        users = await manager.get_all_users(force_refresh=True)
        assert users == []


class TestGetAllUsers:
    """Tests for staleness-driven reads."""

    @pytest.mark.asyncio
    async def test_repeated_reads_within_window_load_once(self, memory_storage, clock):
        """N reads inside the validity window -> exactly one loader call."""
        loader = FixtureUserDataLoader(full_results=[UserLoadResult(users=THREE_USERS, delta_token="T1")])
        manager = build_manager(loader, memory_storage, clock)

        for _ in range(5):
            users = await manager.get_all_users()
            clock.advance(minutes=10)

        assert len(users) == 3
        assert loader.load_all_calls == 1
        assert loader.delta_tokens_requested == []

    @pytest.mark.asyncio
    async def test_read_after_prior_cycle_makes_no_loader_call(self, memory_storage, clock):
        """A cycle that already ran inside the window means zero loader calls on read."""
        loader = FixtureUserDataLoader(full_results=[UserLoadResult(users=THREE_USERS, delta_token="T1")])
        manager = build_manager(loader, memory_storage, clock)
        await manager.sync()

        await manager.get_all_users()
        await manager.get_all_users()

        assert loader.load_all_calls == 1

    @pytest.mark.asyncio
    async def test_expired_window_triggers_delta(self, memory_storage, clock):
        """After the validity window a read runs a delta sync."""
        loader = FixtureUserDataLoader(
            full_results=[UserLoadResult(users=THREE_USERS, delta_token="T1")],
            delta_results={"T1": UserLoadResult(users=[], delta_token="T2")},
        )
        manager = build_manager(loader, memory_storage, clock)
        await manager.get_all_users()

        clock.advance(hours=1)
        await manager.get_all_users()

        assert loader.delta_tokens_requested == ["T1"]

    @pytest.mark.asyncio
    async def test_force_refresh_syncs_inside_window(self, memory_storage, clock):
        loader = FixtureUserDataLoader(
            full_results=[UserLoadResult(users=THREE_USERS, delta_token="T1")],
            delta_results={"T1": UserLoadResult(users=[], delta_token="T2")},
        )
        manager = build_manager(loader, memory_storage, clock)
        await manager.get_all_users()

        await manager.get_all_users(force_refresh=True)

        assert loader.delta_tokens_requested == ["T1"]

    @pytest.mark.asyncio
    async def test_skip_auto_sync_never_loads(self, memory_storage, clock):
        loader = FixtureUserDataLoader(full_results=[UserLoadResult(users=THREE_USERS, delta_token="T1")])
        manager = build_manager(loader, memory_storage, clock)

        users = await manager.get_all_users(skip_auto_sync=True)

        assert users == []
        assert loader.load_all_calls == 0

    @pytest.mark.asyncio
    async def test_concurrent_stale_reads_issue_one_load(self, memory_storage, clock):
        """Racing callers re-check staleness under the lock and share one cycle."""
        loader = FixtureUserDataLoader(full_results=[UserLoadResult(users=THREE_USERS, delta_token="T1")])
        manager = build_manager(loader, memory_storage, clock)

        results = await asyncio.gather(*(manager.get_all_users() for _ in range(5)))

        assert loader.load_all_calls == 1
        assert all(len(users) == 3 for users in results)

    @pytest.mark.asyncio
    async def test_get_user_never_syncs(self, memory_storage, clock):
        loader = FixtureUserDataLoader(full_results=[UserLoadResult(users=THREE_USERS, delta_token="T1")])
        manager = build_manager(loader, memory_storage, clock)

        assert await manager.get_user("u1@contoso.com") is None
        assert loader.load_all_calls == 0


class TestClearCache:
    """Tests for clear_cache."""

    @pytest.mark.asyncio
    async def test_clear_then_read_runs_one_full_sync(self, memory_storage, clock):
        """clear_cache wipes everything; the next read bootstraps with exactly one full load."""
        loader = FixtureUserDataLoader(
            full_results=[
                UserLoadResult(users=THREE_USERS, delta_token="T1"),
                UserLoadResult(users=[], delta_token="T-empty"),
            ]
        )
        manager = build_manager(loader, memory_storage, clock)
        await manager.sync()

        removed = await manager.clear_cache()
        assert removed == 3
        assert (await manager.get_sync_metadata()).delta_token is None

        users = await manager.get_all_users()

        assert users == []
        assert loader.load_all_calls == 2
        assert loader.delta_tokens_requested == []
        assert (await manager.get_sync_metadata()).delta_token == "T-empty"


class TestBatchHandling:
    """Tests for duplicate handling and reconciliation."""

    def test_dedupe_last_wins(self):
        users = [make_user("a", display_name="first"), make_user("b"), make_user("a", display_name="second")]

        deduped = dedupe_last_wins(users)

        assert [u.user_id for u in deduped] == ["b", "a"]
        assert deduped[1].display_name == "second"

    @pytest.mark.asyncio
    async def test_duplicate_ids_in_batch_keep_last(self, memory_storage, clock):
        loader = FixtureUserDataLoader(
            full_results=[
                UserLoadResult(
                    users=[make_user("u1", display_name="old"), make_user("u1", display_name="new")],
                    delta_token="T1",
                )
            ]
        )
        manager = build_manager(loader, memory_storage, clock)

        metadata = await manager.sync()

        users = await manager.get_all_users(skip_auto_sync=True)
        assert [u.display_name for u in users] == ["new"]
        assert metadata.last_sync_user_count == 1

    @pytest.mark.asyncio
    async def test_upn_change_updates_same_record(self, memory_storage, clock):
        """UPN changes are attribute updates keyed by user_id."""
        loader = FixtureUserDataLoader(
            full_results=[UserLoadResult(users=[make_user("u1", upn="old@contoso.com")], delta_token="T1")],
            delta_results={"T1": UserLoadResult(users=[make_user("u1", upn="new@contoso.com")], delta_token="T2")},
        )
        manager = build_manager(loader, memory_storage, clock)
        await manager.sync()
        await manager.sync()

        assert await manager.get_user("old@contoso.com") is None
        assert (await manager.get_user("new@contoso.com")).user_id == "u1"
        assert len(await memory_storage.get_all_users(include_deleted=True)) == 1

    @pytest.mark.asyncio
    async def test_full_sync_without_reconcile_keeps_absent_users(self, memory_storage, clock):
        """Absence from a full snapshot is not a deletion by default."""
        loader = FixtureUserDataLoader(
            full_results=[
                UserLoadResult(users=THREE_USERS, delta_token="T1"),
                UserLoadResult(users=THREE_USERS[:2], delta_token="T2"),
            ]
        )
        manager = build_manager(loader, memory_storage, clock, config=UserCacheConfig(full_sync_interval=timedelta(0)))

        await manager.sync()
        await manager.sync()

        assert len(await manager.get_all_users(skip_auto_sync=True)) == 3

    @pytest.mark.asyncio
    async def test_reconcile_tombstones_users_missing_from_snapshot(self, memory_storage, clock):
        loader = FixtureUserDataLoader(
            full_results=[
                UserLoadResult(users=THREE_USERS, delta_token="T1"),
                UserLoadResult(users=THREE_USERS[:2], delta_token="T2"),
            ]
        )
        config = UserCacheConfig(full_sync_interval=timedelta(0), reconcile_on_full_sync=True)
        manager = build_manager(loader, memory_storage, clock, config=config)

        await manager.sync()
        await manager.sync()

        assert sorted(u.user_id for u in await manager.get_all_users(skip_auto_sync=True)) == ["u1", "u2"]
        assert (await manager.get_user("u3@contoso.com")).is_deleted is True

    @pytest.mark.asyncio
    async def test_reconcile_skips_empty_snapshot(self, memory_storage, clock):
        loader = FixtureUserDataLoader(
            full_results=[
                UserLoadResult(users=THREE_USERS, delta_token="T1"),
                UserLoadResult(users=[], delta_token="T2"),
            ]
        )
        config = UserCacheConfig(full_sync_interval=timedelta(0), reconcile_on_full_sync=True)
        manager = build_manager(loader, memory_storage, clock, config=config)

        await manager.sync()
        await manager.sync()

        assert len(await manager.get_all_users(skip_auto_sync=True)) == 3


class TestRefreshEnrichment:
    """Tests for the stats refresh cadence."""

    async def _seeded(self, memory_storage, clock, feed):
        loader = FixtureUserDataLoader(full_results=[UserLoadResult(users=THREE_USERS, delta_token="T1")])
        enricher = CopilotStatsEnricher(feed, memory_storage, clock=clock)
        manager = build_manager(loader, memory_storage, clock, stats_enricher=enricher)
        await manager.sync()
        return manager

    @pytest.mark.asyncio
    async def test_first_refresh_applies_stats(self, memory_storage, clock):
        feed = FixtureStatsLoader(
            records=[CopilotUsageRecord(user_principal_name="U1@contoso.com", activity={"copilot_chat": clock.now})]
        )
        manager = await self._seeded(memory_storage, clock, feed)

        result = await manager.refresh_enrichment()

        assert result.ran is True
        assert result.report.applied == 1
        user = await manager.get_user("u1@contoso.com")
        assert user.activity == {"copilot_chat": clock.now}
        assert (await manager.get_sync_metadata()).last_stats_refresh_at == clock.now

    @pytest.mark.asyncio
    async def test_refresh_skipped_while_fresh(self, memory_storage, clock):
        feed = FixtureStatsLoader(records=[])
        manager = await self._seeded(memory_storage, clock, feed)
        await manager.refresh_enrichment()

        clock.advance(hours=23)
        result = await manager.refresh_enrichment()

        assert result.ran is False
        assert feed.fetch_calls == 1

        clock.advance(hours=1)
        assert (await manager.refresh_enrichment()).ran is True
        assert feed.fetch_calls == 2

    @pytest.mark.asyncio
    async def test_force_ignores_interval(self, memory_storage, clock):
        feed = FixtureStatsLoader(records=[])
        manager = await self._seeded(memory_storage, clock, feed)
        await manager.refresh_enrichment()

        assert (await manager.refresh_enrichment(force=True)).ran is True
        assert feed.fetch_calls == 2

    @pytest.mark.asyncio
    async def test_forbidden_feed_is_not_fatal_and_advances_timestamp(self, memory_storage, clock):
        feed = FixtureStatsLoader(
            outcome=StatsLoadOutcome.failure(StatsFeedState.FORBIDDEN, "not licensed", status_code=403)
        )
        manager = await self._seeded(memory_storage, clock, feed)

        result = await manager.refresh_enrichment()

        assert result.ran is True
        assert result.report is None
        assert result.outcome.state == StatsFeedState.FORBIDDEN
        assert (await manager.get_sync_metadata()).last_stats_refresh_at == clock.now
        assert len(await manager.get_all_users(skip_auto_sync=True)) == 3

    @pytest.mark.asyncio
    async def test_auth_error_propagates_without_advancing(self, memory_storage, clock):
        feed = FixtureStatsLoader(error=GraphAuthError("bad secret", status_code=401))
        manager = await self._seeded(memory_storage, clock, feed)

        with pytest.raises(GraphAuthError):
            await manager.refresh_enrichment()

        assert (await manager.get_sync_metadata()).last_stats_refresh_at is None

    @pytest.mark.asyncio
    async def test_stats_refresh_preserves_sync_metadata(self, memory_storage, clock):
        feed = FixtureStatsLoader(records=[])
        manager = await self._seeded(memory_storage, clock, feed)

        await manager.refresh_enrichment()

        metadata = await manager.get_sync_metadata()
        assert metadata.delta_token == "T1"
        assert metadata.last_sync_status == SyncStatus.SUCCESS


class GatedMemoryStorage(InMemoryCacheStorage):
    """Holds every activity write until release_stats is set."""

    def __init__(self):
        super().__init__()
        self.stats_started = asyncio.Event()
        self.release_stats = asyncio.Event()

    async def merge_activity(self, upn, activity, updated_at):
        self.stats_started.set()
        await self.release_stats.wait()
        return await super().merge_activity(upn, activity, updated_at)


class TestStatsInterleavedWithSync:
    """A stats pass that overlaps a sync cycle never overwrites what the sync wrote."""

    async def _run_interleaved(self, clock, delta_users):
        storage = GatedMemoryStorage()
        loader = FixtureUserDataLoader(
            full_results=[UserLoadResult(users=THREE_USERS, delta_token="T1")],
            delta_results={"T1": UserLoadResult(users=delta_users, delta_token="T2")},
        )
        enricher = CopilotStatsEnricher(FixtureStatsLoader(), storage, clock=clock)
        manager = build_manager(loader, storage, clock, stats_enricher=enricher)
        await manager.sync()
        clock.advance(minutes=30)

        stats_task = asyncio.create_task(
            enricher.apply_stats(
                [CopilotUsageRecord(user_principal_name="u1@contoso.com", activity={"word_copilot": clock.now})]
            )
        )
        await storage.stats_started.wait()
        await manager.sync()
        storage.release_stats.set()
        report = await stats_task
        return manager, report

    @pytest.mark.asyncio
    async def test_tombstone_from_delta_survives_stats_write(self, clock):
        manager, report = await self._run_interleaved(clock, [make_tombstone("u1")])

        live = [user.user_id for user in await manager.get_all_users(skip_auto_sync=True)]
        assert live == ["u2", "u3"]
        assert report.items[0].outcome == ItemOutcome.SKIPPED_DELETED
        assert (await manager.get_user("u1@contoso.com")).activity == {}

    @pytest.mark.asyncio
    async def test_directory_change_from_delta_survives_stats_write(self, clock):
        manager, report = await self._run_interleaved(clock, [make_user("u1", display_name="Renamed One")])

        user = await manager.get_user("u1@contoso.com")
        assert report.applied == 1
        assert user.display_name == "Renamed One"
        assert user.activity == {"word_copilot": clock.now}
