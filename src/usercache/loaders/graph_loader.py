"""
Graph User Data Loader

Loads users from Microsoft Graph with delta query support.

Full load:   GET /v1.0/users/delta?$select=...   (follow @odata.nextLink, keep @odata.deltaLink)
Delta load:  GET <stored @odata.deltaLink>        (same paging, returns only changes)

Delta queries do not accept $filter, so disabled accounts and guests are
filtered client-side after retrieval.
"""

import asyncio
from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple

import httpx
from loguru import logger

from usercache.enums import ItemOutcome
from usercache.errors import DataLoadError
from usercache.errors import DeltaTokenExpiredError
from usercache.loaders.base import UserDataLoader
from usercache.loaders.graph_client import GraphClient
from usercache.models import CachedUser
from usercache.models import EnrichmentReport
from usercache.models import UserLoadResult

USER_SELECT_PROPERTIES = [
    "id",
    "userPrincipalName",
    "displayName",
    "givenName",
    "surname",
    "mail",
    "department",
    "jobTitle",
    "officeLocation",
    "city",
    "country",
    "state",
    "companyName",
    "employeeType",
    "employeeHireDate",
    "accountEnabled",
    "userType",
]

# Graph property -> CachedUser field
GRAPH_FIELD_MAP = {
    "userPrincipalName": "user_principal_name",
    "displayName": "display_name",
    "givenName": "given_name",
    "surname": "surname",
    "mail": "mail",
    "department": "department",
    "jobTitle": "job_title",
    "officeLocation": "office_location",
    "city": "city",
    "country": "country",
    "state": "state",
    "companyName": "company_name",
    "employeeType": "employee_type",
    "employeeHireDate": "hire_date",
}

MANAGER_LOOKUP_CONCURRENCY = 8


def is_enabled_member(item: Dict[str, Any]) -> bool:
    """True for enabled accounts of type Member (guests and disabled accounts are excluded)."""
    return item.get("accountEnabled") is True and item.get("userType") == "Member"


def is_excluded_by_change(item: Dict[str, Any]) -> bool:
    """
    True when a delta entry explicitly reports the user as disabled or non-member.

    Delta entries may omit unchanged properties, so only explicit values count.
    """
    if item.get("accountEnabled") is False:
        return True
    user_type = item.get("userType")
    return user_type is not None and user_type != "Member"


def map_graph_user(item: Dict[str, Any], synced_at: datetime, removed: bool = False) -> CachedUser:
    """Map a Graph user JSON object onto a CachedUser."""
    fields = {target: item.get(source) for source, target in GRAPH_FIELD_MAP.items()}
    fields["user_principal_name"] = fields["user_principal_name"] or ""
    return CachedUser(
        user_id=item["id"],
        is_deleted=removed or "@removed" in item,
        last_synced_at=synced_at,
        **fields,
    )


class GraphUserDataLoader(UserDataLoader):
    """Loads users from Microsoft Graph /users/delta."""

    def __init__(
        self,
        client: GraphClient,
        page_size: int = 999,
        enrich_managers: bool = False,
    ):
        """
        Args:
            client: Authenticated Graph client
            page_size: Requested page size (Prefer: odata.maxpagesize)
            enrich_managers: Look up each returned user's manager after the load
        """
        self.client = client
        self.page_size = page_size
        self.enrich_managers = enrich_managers
        self.last_manager_outcomes: Optional[EnrichmentReport] = None

    async def load_all(self) -> UserLoadResult:
        logger.info("Loading all users from Microsoft Graph with delta query initialization")
        params = {"$select": ",".join(USER_SELECT_PROPERTIES)}

        async with self.client.session() as http:
            items, delta_link = await self._collect_pages(http, "/v1.0/users/delta", params)
            now = datetime.now(timezone.utc)

            users = [map_graph_user(item, now) for item in items if "@removed" not in item and is_enabled_member(item)]
            logger.info(
                "Loaded users from Microsoft Graph",
                returned=len(items),
                kept=len(users),
                filtered_out=len(items) - len(users),
            )

            if self.enrich_managers:
                await self._enrich_managers(http, users)

        return UserLoadResult(users=users, delta_token=delta_link)

    async def load_delta(self, delta_token: str) -> UserLoadResult:
        if not delta_token:
            raise DeltaTokenExpiredError("No delta token available")

        logger.info("Loading delta changes from Microsoft Graph")

        async with self.client.session() as http:
            items, delta_link = await self._collect_pages(http, delta_token, None)
            now = datetime.now(timezone.utc)

            users = [map_graph_user(item, now, removed=is_excluded_by_change(item)) for item in items]
            removed = sum(1 for user in users if user.is_deleted)
            logger.info("Loaded delta changes from Microsoft Graph", changes=len(users), removed=removed)

            if self.enrich_managers:
                await self._enrich_managers(http, [user for user in users if not user.is_deleted])

        return UserLoadResult(users=users, delta_token=delta_link)

    async def _collect_pages(
        self,
        http: httpx.AsyncClient,
        url: str,
        params: Optional[Dict[str, Any]],
    ) -> Tuple[List[Dict[str, Any]], str]:
        """Follow @odata.nextLink until the final page carries @odata.deltaLink."""
        headers = {"Prefer": f"odata.maxpagesize={self.page_size}"}
        items: List[Dict[str, Any]] = []
        next_url: Optional[str] = url
        pages = 0

        while next_url:
            page = await self.client.get_json(http, next_url, params=params, headers=headers)
            params = None  # nextLink already carries the query
            pages += 1
            items.extend(page.get("value") or [])

            delta_link = page.get("@odata.deltaLink")
            if delta_link:
                logger.debug("Graph delta paging complete", pages=pages, items=len(items))
                return items, delta_link
            next_url = page.get("@odata.nextLink")

        raise DataLoadError(f"Graph delta response ended after {pages} page(s) without @odata.deltaLink")

    async def _enrich_managers(self, http: httpx.AsyncClient, users: List[CachedUser]) -> EnrichmentReport:
        """
        Fill manager_upn / manager_display_name for each user.

        One failed lookup never aborts the batch; every user gets an outcome in
        the returned report (also kept on self.last_manager_outcomes).
        """
        report = EnrichmentReport()
        semaphore = asyncio.Semaphore(MANAGER_LOOKUP_CONCURRENCY)

        async def lookup(user: CachedUser) -> None:
            async with semaphore:
                try:
                    response = await self.client.get(
                        http,
                        f"/v1.0/users/{user.user_id}/manager",
                        params={"$select": "userPrincipalName,displayName"},
                    )
                    if response.status_code == 404:
                        report.add(user.user_principal_name, ItemOutcome.SKIPPED_NOT_FOUND)
                        return
                    response.raise_for_status()
                    manager = response.json()
                    user.manager_upn = manager.get("userPrincipalName")
                    user.manager_display_name = manager.get("displayName")
                    report.add(user.user_principal_name, ItemOutcome.APPLIED)
                except (DataLoadError, httpx.HTTPError, ValueError) as e:
                    logger.warning("Manager lookup failed", upn=user.user_principal_name, error=str(e))
                    report.add(user.user_principal_name, ItemOutcome.FAILED, error=str(e))

        await asyncio.gather(*(lookup(user) for user in users))

        logger.info(
            "Manager enrichment completed",
            applied=report.applied,
            without_manager=report.count(ItemOutcome.SKIPPED_NOT_FOUND),
            failed=report.failed,
        )
        self.last_manager_outcomes = report
        return report
