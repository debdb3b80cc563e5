"""
Load Result Models

Transient (never persisted) values passed between the loaders, the
statistics enrichment pass and the cache manager.
"""

from datetime import datetime
from typing import Dict
from typing import List
from typing import Optional

from pydantic import BaseModel
from pydantic import Field

from usercache.enums import ItemOutcome
from usercache.enums import StatsFeedState
from usercache.models.cached_user import CachedUser


class UserLoadResult(BaseModel):
    """Output of a directory load: ordered records plus the next continuation token."""

    users: List[CachedUser] = Field(default_factory=list)
    delta_token: Optional[str] = None


class CopilotUsageRecord(BaseModel):
    """Usage statistics for one user, keyed by UPN."""

    user_principal_name: str
    activity: Dict[str, Optional[datetime]] = Field(default_factory=dict)


class StatsLoadOutcome(BaseModel):
    """Structured result of fetching the statistics feed. Failures are values, not exceptions."""

    records: List[CopilotUsageRecord] = Field(default_factory=list)
    success: bool = False
    state: StatsFeedState = StatsFeedState.UNAVAILABLE
    status_code: Optional[int] = None
    error_message: Optional[str] = None

    @classmethod
    def from_records(cls, records: List[CopilotUsageRecord], status_code: Optional[int] = None) -> "StatsLoadOutcome":
        state = StatsFeedState.SUCCESS if records else StatsFeedState.EMPTY
        return cls(records=records, success=True, state=state, status_code=status_code)

    @classmethod
    def failure(
        cls,
        state: StatsFeedState,
        error_message: str,
        status_code: Optional[int] = None,
    ) -> "StatsLoadOutcome":
        return cls(success=False, state=state, status_code=status_code, error_message=error_message)


class EnrichmentItemResult(BaseModel):
    """Outcome for a single user within an enrichment batch."""

    user_principal_name: str
    outcome: ItemOutcome
    error: Optional[str] = None


class EnrichmentReport(BaseModel):
    """Per-item outcomes of an enrichment batch."""

    items: List[EnrichmentItemResult] = Field(default_factory=list)

    def add(self, upn: str, outcome: ItemOutcome, error: Optional[str] = None) -> None:
        self.items.append(EnrichmentItemResult(user_principal_name=upn, outcome=outcome, error=error))

    def count(self, outcome: ItemOutcome) -> int:
        return sum(1 for item in self.items if item.outcome == outcome)

    @property
    def applied(self) -> int:
        return self.count(ItemOutcome.APPLIED)

    @property
    def failed(self) -> int:
        return self.count(ItemOutcome.FAILED)

    @property
    def skipped(self) -> int:
        return self.count(ItemOutcome.SKIPPED_NOT_FOUND) + self.count(ItemOutcome.SKIPPED_DELETED)


class StatsRefreshResult(BaseModel):
    """What a refresh_enrichment() call did."""

    ran: bool
    outcome: Optional[StatsLoadOutcome] = None
    report: Optional[EnrichmentReport] = None
    skipped_reason: Optional[str] = None
