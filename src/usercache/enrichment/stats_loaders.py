"""
Copilot Usage Statistics Feeds

GraphCopilotStatsLoader downloads the Microsoft 365 Copilot usage report
(CSV) from the Graph beta reports endpoint. FixtureStatsLoader serves a
scripted outcome for tests and local runs.

Expected conditions (no licence, empty report, network failure) come back
as a StatsLoadOutcome; only authentication failures raise.
"""

import csv
import io
from abc import ABC
from abc import abstractmethod
from datetime import datetime
from datetime import timezone
from typing import Dict
from typing import List
from typing import Optional

import httpx
from loguru import logger

from usercache.enums import StatsFeedState
from usercache.errors import DataLoadError
from usercache.errors import GraphAuthError
from usercache.loaders.graph_client import GraphClient
from usercache.models import CopilotUsageRecord
from usercache.models import StatsLoadOutcome

UPN_HEADER = "User Principal Name"

# CSV header -> activity key stored on CachedUser.activity
ACTIVITY_COLUMNS = {
    "Last Activity Date": "copilot_last_activity",
    "Copilot Chat Last Activity Date": "copilot_chat",
    "Microsoft Teams Copilot Last Activity Date": "teams_copilot",
    "Word Copilot Last Activity Date": "word_copilot",
    "Excel Copilot Last Activity Date": "excel_copilot",
    "PowerPoint Copilot Last Activity Date": "powerpoint_copilot",
    "Outlook Copilot Last Activity Date": "outlook_copilot",
    "OneNote Copilot Last Activity Date": "onenote_copilot",
    "Loop Copilot Last Activity Date": "loop_copilot",
}

REPORT_PATH = "/beta/reports/getMicrosoft365CopilotUsageUserDetail(period='{period}')"


def parse_report_date(value: Optional[str]) -> Optional[datetime]:
    """Parse a report date (YYYY-MM-DD, or ISO timestamp) as UTC; blank or unparseable -> None."""
    value = (value or "").strip()
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_copilot_usage_csv(content: str) -> List[CopilotUsageRecord]:
    """Parse the Copilot usage CSV. Rows without a UPN are dropped; missing columns are ignored."""
    reader = csv.DictReader(io.StringIO(content.lstrip("\ufeff")))
    if not reader.fieldnames:
        return []
    reader.fieldnames = [name.strip() for name in reader.fieldnames]
    if UPN_HEADER not in reader.fieldnames:
        logger.warning("Copilot usage report has no UPN column", headers=reader.fieldnames)
        return []

    present = {header: key for header, key in ACTIVITY_COLUMNS.items() if header in reader.fieldnames}
    records = []
    for row in reader:
        upn = (row.get(UPN_HEADER) or "").strip()
        if not upn:
            continue
        activity: Dict[str, Optional[datetime]] = {key: parse_report_date(row.get(header)) for header, key in present.items()}
        records.append(CopilotUsageRecord(user_principal_name=upn, activity=activity))
    return records


class StatsLoader(ABC):
    """Source of per-user usage statistics."""

    @abstractmethod
    async def fetch(self) -> StatsLoadOutcome:
        """
        Fetch the current statistics.

        Raises:
            GraphAuthError: credentials were rejected or no token could be obtained
        """


class GraphCopilotStatsLoader(StatsLoader):
    """Microsoft 365 Copilot usage report (requires Reports.Read.All)."""

    def __init__(self, client: GraphClient, period: str = "D30"):
        self.client = client
        self.period = period

    async def fetch(self) -> StatsLoadOutcome:
        path = REPORT_PATH.format(period=self.period)
        logger.info("Fetching Copilot usage report", period=self.period)

        try:
            async with self.client.session() as http:
                response = await self.client.get(http, path, params={"$format": "text/csv"})

                if response.status_code == 302:
                    download_url = response.headers.get("location")
                    if not download_url:
                        return self._failed(StatsFeedState.UNAVAILABLE, "Redirect location URL was empty", 302)
                    # pre-authenticated download URL, no bearer token
                    response = await http.get(download_url)

                if response.status_code == 401:
                    raise GraphAuthError("Copilot usage report rejected the access token", status_code=401)
                if response.status_code == 403:
                    return self._failed(
                        StatsFeedState.FORBIDDEN,
                        "Copilot usage report is not available for this tenant or app (403)",
                        403,
                    )
                if not response.is_success:
                    return self._failed(
                        StatsFeedState.UNAVAILABLE,
                        f"Copilot usage report returned {response.status_code} - {response.reason_phrase}",
                        response.status_code,
                    )

                records = parse_copilot_usage_csv(response.text)

        except GraphAuthError:
            raise
        except (DataLoadError, httpx.HTTPError) as e:
            return self._failed(StatsFeedState.UNAVAILABLE, f"Error fetching Copilot usage stats: {e}")

        logger.info("Copilot usage report parsed", records=len(records))
        return StatsLoadOutcome.from_records(records, status_code=response.status_code)

    @staticmethod
    def _failed(state: StatsFeedState, message: str, status_code: Optional[int] = None) -> StatsLoadOutcome:
        logger.warning(message, state=state.value, status_code=status_code)
        return StatsLoadOutcome.failure(state, message, status_code=status_code)


class FixtureStatsLoader(StatsLoader):
    """Returns a fixed outcome (or raises a fixed exception); counts calls."""

    def __init__(
        self,
        records: Optional[List[CopilotUsageRecord]] = None,
        outcome: Optional[StatsLoadOutcome] = None,
        error: Optional[Exception] = None,
    ):
        self.outcome = outcome or StatsLoadOutcome.from_records(list(records or []), status_code=200)
        self.error = error
        self.fetch_calls = 0

    async def fetch(self) -> StatsLoadOutcome:
        self.fetch_calls += 1
        if self.error is not None:
            raise self.error
        return self.outcome.model_copy(deep=True)
