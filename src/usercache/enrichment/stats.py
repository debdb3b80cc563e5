"""
Copilot Stats Enricher

Overlays usage statistics onto cached users, matched by UPN. Runs on its
own cadence (driven by UserCacheManager.refresh_enrichment) and never
touches directory attributes or sync decisions.
"""

from datetime import datetime
from datetime import timezone
from typing import Callable
from typing import List
from typing import Optional

from loguru import logger

from usercache.enums import ItemOutcome
from usercache.errors import CacheStorageError
from usercache.enrichment.stats_loaders import StatsLoader
from usercache.models import CopilotUsageRecord
from usercache.models import EnrichmentReport
from usercache.models import StatsLoadOutcome
from usercache.storage.base import CacheStorage


class CopilotStatsEnricher:
    """Fetches the usage feed and merges it into cached users."""

    def __init__(
        self,
        feed: StatsLoader,
        storage: CacheStorage,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.feed = feed
        self.storage = storage
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def fetch_stats(self) -> StatsLoadOutcome:
        """Fetch from the feed. GraphAuthError propagates; other failures are in the outcome."""
        outcome = await self.feed.fetch()
        logger.info(
            "Copilot stats fetched",
            state=outcome.state.value,
            records=len(outcome.records),
            status_code=outcome.status_code,
        )
        return outcome

    async def apply_stats(self, records: List[CopilotUsageRecord]) -> EnrichmentReport:
        """
        Merge each record's activity into the cached user with the same UPN.

        Unknown and tombstoned users are skipped. A storage failure for one
        user is recorded as FAILED and the rest of the batch continues.
        """
        report = EnrichmentReport()
        now = self._clock()

        for record in records:
            upn = record.user_principal_name
            try:
                stored = await self.storage.merge_activity(upn, record.activity, now)
                if stored is None:
                    logger.debug("User not found in cache, skipping stats update", upn=upn)
                    report.add(upn, ItemOutcome.SKIPPED_NOT_FOUND)
                elif stored.is_deleted:
                    report.add(upn, ItemOutcome.SKIPPED_DELETED)
                else:
                    report.add(upn, ItemOutcome.APPLIED)
            except CacheStorageError as e:
                logger.warning("Failed to store Copilot stats for user", upn=upn, error=str(e))
                report.add(upn, ItemOutcome.FAILED, error=str(e))

        logger.info(
            f"Updated Copilot stats for {report.applied} users",
            skipped=report.skipped,
            failed=report.failed,
        )
        return report
