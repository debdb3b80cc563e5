"""
User Cache Models Module

Pydantic models for the directory mirror:
- Cached user records and the sync metadata singleton (persisted)
- Load results and enrichment outcomes (transient)
"""

from usercache.models.cached_user import CachedUser, DIRECTORY_FIELDS, merge_user
from usercache.models.sync_metadata import SyncMetadata
from usercache.models.load_results import (
    UserLoadResult,
    CopilotUsageRecord,
    StatsLoadOutcome,
    EnrichmentItemResult,
    EnrichmentReport,
    StatsRefreshResult,
)

__all__ = [
    # Persisted
    "CachedUser",
    "DIRECTORY_FIELDS",
    "merge_user",
    "SyncMetadata",
    # Transient
    "UserLoadResult",
    "CopilotUsageRecord",
    "StatsLoadOutcome",
    "EnrichmentItemResult",
    "EnrichmentReport",
    "StatsRefreshResult",
]
