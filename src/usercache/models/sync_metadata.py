"""
Sync Metadata Model

Singleton bookkeeping row describing the state of the mirror.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from usercache.enums import SyncStatus


class SyncMetadata(BaseModel):
    """Sync metadata (one row per mirror)."""

    delta_token: Optional[str] = None  # Graph @odata.deltaLink from the last successful sync
    last_full_sync_at: Optional[datetime] = None
    last_delta_sync_at: Optional[datetime] = None  # also set by full syncs
    last_stats_refresh_at: Optional[datetime] = None
    last_sync_status: Optional[SyncStatus] = None
    last_sync_error: Optional[str] = None
    last_sync_user_count: int = 0

    class Config:
        from_attributes = True

    @property
    def has_delta_token(self) -> bool:
        return bool(self.delta_token)
