"""Settings for the user cache."""

from dataclasses import dataclass
from datetime import timedelta
from typing import Literal
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict

VALID_STATS_PERIODS = ("D7", "D30", "D90", "D180")


@dataclass(frozen=True)
class UserCacheConfig:
    """Cadence and behaviour knobs consumed by UserCacheManager."""

    cache_expiration: timedelta = timedelta(hours=1)
    full_sync_interval: timedelta = timedelta(days=7)
    stats_refresh_interval: timedelta = timedelta(hours=24)
    reconcile_on_full_sync: bool = False


class Settings(BaseSettings):
    """
    Settings for the user cache.

    [pydantic.BaseSettings](https://docs.pydantic.dev/latest/concepts/pydantic_settings/) reads
    and validates configuration values from:
    1. Environment variables (production - App Service / Function configuration)
    2. .env file (local development)

    Environment variable names are treated case-insensitively.
    """

    # Microsoft Graph (Entra ID app registration)
    azure_tenant_id: Optional[str] = None
    """Entra ID tenant ID used for the client-credentials token request."""

    graph_client_id: Optional[str] = None
    """App registration client ID with User.Read.All and Reports.Read.All application permissions."""

    graph_client_secret: Optional[str] = None
    """App registration client secret."""

    graph_base_url: str = "https://graph.microsoft.com"
    """Microsoft Graph root URL (override for national clouds)."""

    graph_page_size: int = 999
    """Page size requested from the users delta endpoint (Graph caps this at 999)."""

    graph_request_timeout_seconds: float = 30.0
    """Timeout applied to every Graph HTTP request."""

    enrich_managers: bool = False
    """Look up each user's manager after a load (one Graph call per user)."""

    # Cache cadence
    cache_expiration_minutes: int = 60
    """How long cached user data is valid before a read triggers a sync."""

    full_sync_interval_hours: int = 168
    """How often a full re-baseline replaces the incremental sync (default: 7 days)."""

    copilot_stats_refresh_interval_hours: int = 24
    """How often Copilot usage statistics are refreshed."""

    copilot_stats_period: str = "D30"
    """Report period for Copilot usage statistics: D7, D30, D90 or D180."""

    reconcile_on_full_sync: bool = False
    """Tombstone cached users that are missing from a full snapshot."""

    # Cache storage
    cache_storage_backend: Literal["postgresql", "memory"] = "postgresql"
    """Persistence backend for cached users and sync metadata."""

    domain_db_connection_string: Optional[str] = None
    """PostgreSQL connection string for the cache database (required for the postgresql backend)."""

    user_cache_schema: str = "usercache"
    """PostgreSQL schema holding the users and sync_metadata tables."""

    # Logging
    log_level: str = "INFO"
    """Minimum level for console logging."""

    log_file: Optional[str] = None
    """Optional rotating log file path (local development)."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",  # Load from .env file if it exists (local development)
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra environment variables not defined in the model
        validate_default=True,
    )

    @field_validator("copilot_stats_period")
    @classmethod
    def _check_stats_period(cls, value: str) -> str:
        period = value.upper()
        if period not in VALID_STATS_PERIODS:
            raise ValueError(f"copilot_stats_period must be one of {', '.join(VALID_STATS_PERIODS)}")
        return period

    @field_validator("user_cache_schema")
    @classmethod
    def _check_schema_name(cls, value: str) -> str:
        # interpolated into SQL, so keep it to a plain identifier
        if not value.isidentifier():
            raise ValueError("user_cache_schema must be a plain SQL identifier")
        return value

    @property
    def graph_credentials_configured(self) -> bool:
        return bool(self.azure_tenant_id and self.graph_client_id and self.graph_client_secret)

    def cache_config(self) -> UserCacheConfig:
        """Build the plain cadence config handed to UserCacheManager."""
        return UserCacheConfig(
            cache_expiration=timedelta(minutes=self.cache_expiration_minutes),
            full_sync_interval=timedelta(hours=self.full_sync_interval_hours),
            stats_refresh_interval=timedelta(hours=self.copilot_stats_refresh_interval_hours),
            reconcile_on_full_sync=self.reconcile_on_full_sync,
        )
