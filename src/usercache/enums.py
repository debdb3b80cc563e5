"""
User Cache Enums

Enum types used by the sync engine and the statistics enrichment pass.
Values of SyncStatus are persisted and must stay stable.
"""

from enum import Enum


class SyncStatus(str, Enum):
    """Outcome of the most recent sync attempt (persisted in sync metadata)."""

    SUCCESS = "Success"
    FAILED = "Failed"
    IN_PROGRESS = "InProgress"


class SyncType(str, Enum):
    """Kind of load performed by a sync cycle."""

    FULL = "FULL"  # Whole population, re-baselines the continuation token
    DELTA = "DELTA"  # Changes since the stored continuation token


class StatsFeedState(str, Enum):
    """Result of fetching the usage statistics feed."""

    SUCCESS = "SUCCESS"  # Feed returned one or more records
    EMPTY = "EMPTY"  # Feed reachable but returned no records
    FORBIDDEN = "FORBIDDEN"  # Tenant is not licensed / app lacks Reports.Read.All
    UNAVAILABLE = "UNAVAILABLE"  # Network failure or unexpected response


class ItemOutcome(str, Enum):
    """Per-user outcome of an enrichment step."""

    APPLIED = "APPLIED"
    SKIPPED_NOT_FOUND = "SKIPPED_NOT_FOUND"
    SKIPPED_DELETED = "SKIPPED_DELETED"
    FAILED = "FAILED"
