"""
Cached User Model

A mirrored directory entry (synced from Microsoft Graph) plus the usage
statistics overlaid on it by the enrichment pass.
"""

from datetime import datetime
from typing import Dict
from typing import Optional

from pydantic import BaseModel
from pydantic import Field

# Attributes owned by the directory sync. Replaced wholesale on every upsert.
DIRECTORY_FIELDS = (
    "display_name",
    "given_name",
    "surname",
    "mail",
    "department",
    "job_title",
    "office_location",
    "city",
    "state",
    "country",
    "company_name",
    "employee_type",
    "hire_date",
    "manager_upn",
    "manager_display_name",
)


class CachedUser(BaseModel):
    """User (synced from Entra ID) cache model."""

    user_id: str  # Graph object ID, immutable
    user_principal_name: str = ""  # secondary lookup key; empty on bare delta removals
    display_name: Optional[str] = None
    given_name: Optional[str] = None
    surname: Optional[str] = None
    mail: Optional[str] = None
    department: Optional[str] = None
    job_title: Optional[str] = None
    office_location: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    company_name: Optional[str] = None
    employee_type: Optional[str] = None
    hire_date: Optional[datetime] = None
    manager_upn: Optional[str] = None
    manager_display_name: Optional[str] = None

    is_deleted: bool = False
    last_synced_at: Optional[datetime] = None

    # Enrichment (owned by the stats pass): feature name -> last activity
    activity: Dict[str, Optional[datetime]] = Field(default_factory=dict)
    last_stats_update: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def upn_key(self) -> str:
        """Normalized lookup key (UPNs are case-insensitive)."""
        return self.user_principal_name.strip().lower()

    def to_summary(self) -> str:
        """One-line attribute summary used by group-matching consumers."""
        parts = [
            f"UPN: {self.user_principal_name}",
            f"Name: {self.display_name or 'Unknown'}",
        ]
        labelled = (
            ("Job Title", self.job_title),
            ("Department", self.department),
            ("Office", self.office_location),
            ("City", self.city),
            ("State", self.state),
            ("Country", self.country),
            ("Company", self.company_name),
            ("Manager", self.manager_display_name),
            ("Employee Type", self.employee_type),
        )
        parts.extend(f"{label}: {value}" for label, value in labelled if value)
        return " | ".join(parts)


def merge_user(existing: Optional[CachedUser], incoming: CachedUser) -> CachedUser:
    """
    Apply an incoming record on top of the cached one.

    - No cached row: the incoming record is stored as-is.
    - Incoming tombstone: only is_deleted (and last_synced_at) change; Graph
      delta removals carry nothing but the object ID.
    - Otherwise directory fields are replaced, the tombstone is cleared and
      enrichment keys are merged (incoming wins, absent keys are kept).

    The result for the same inputs is always the same, so repeated upserts are idempotent.
    """
    if existing is None:
        return incoming.model_copy(deep=True)

    if incoming.is_deleted:
        return existing.model_copy(
            update={
                "is_deleted": True,
                "last_synced_at": incoming.last_synced_at or existing.last_synced_at,
            },
            deep=True,
        )

    update = {field: getattr(incoming, field) for field in DIRECTORY_FIELDS}
    update.update(
        {
            "user_principal_name": incoming.user_principal_name or existing.user_principal_name,
            "is_deleted": False,
            "last_synced_at": incoming.last_synced_at or existing.last_synced_at,
            "activity": {**existing.activity, **incoming.activity},
            "last_stats_update": incoming.last_stats_update or existing.last_stats_update,
        }
    )
    return existing.model_copy(update=update, deep=True)
