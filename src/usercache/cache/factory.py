"""Wiring of loader, storage, stats feed and manager from Settings."""

from typing import Optional

from loguru import logger

from usercache.cache.manager import UserCacheManager
from usercache.enrichment.stats import CopilotStatsEnricher
from usercache.enrichment.stats_loaders import FixtureStatsLoader
from usercache.enrichment.stats_loaders import GraphCopilotStatsLoader
from usercache.graph_auth.token_manager import GraphTokenManager
from usercache.loaders.fixture_loader import FixtureUserDataLoader
from usercache.loaders.graph_client import GraphClient
from usercache.loaders.graph_loader import GraphUserDataLoader
from usercache.monitoring.logger import configure_logger
from usercache.settings import Settings
from usercache.storage.memory_storage import InMemoryCacheStorage
from usercache.storage.postgres_storage import PostgresCacheStorage


def build_user_cache_manager(settings: Settings, pool=None) -> UserCacheManager:
    """
    Build a UserCacheManager from settings.

    Args:
        settings: Loaded Settings
        pool: Initialized CacheDBPool (required for the postgresql backend)

    Applies the configured log level and log file. Without Graph credentials
    the memory backend runs on the fixture loader and an empty stats feed;
    the postgresql backend refuses to start.
    """
    configure_logger(settings.log_level, settings.log_file)

    if settings.cache_storage_backend == "memory":
        storage = InMemoryCacheStorage()
    else:
        if pool is None:
            raise ValueError("A CacheDBPool is required for the postgresql cache storage backend")
        storage = PostgresCacheStorage(pool, schema=settings.user_cache_schema)

    if settings.graph_credentials_configured:
        token_manager = GraphTokenManager(
            settings.azure_tenant_id,
            settings.graph_client_id,
            settings.graph_client_secret,
            timeout=settings.graph_request_timeout_seconds,
        )
        client = GraphClient(
            token_manager,
            base_url=settings.graph_base_url,
            timeout=settings.graph_request_timeout_seconds,
        )
        loader = GraphUserDataLoader(
            client,
            page_size=settings.graph_page_size,
            enrich_managers=settings.enrich_managers,
        )
        feed = GraphCopilotStatsLoader(client, period=settings.copilot_stats_period)
    elif settings.cache_storage_backend == "memory":
        logger.warning("Graph credentials not configured, using fixture loader and empty stats feed")
        loader = FixtureUserDataLoader()
        feed = FixtureStatsLoader()
    else:
        raise ValueError(
            "AZURE_TENANT_ID, GRAPH_CLIENT_ID and GRAPH_CLIENT_SECRET are required for the postgresql cache storage backend"
        )

    logger.info(
        "User cache manager configured",
        storage_backend=settings.cache_storage_backend,
        loader=type(loader).__name__,
    )
    return UserCacheManager(
        loader=loader,
        storage=storage,
        stats_enricher=CopilotStatsEnricher(feed, storage),
        config=settings.cache_config(),
    )
