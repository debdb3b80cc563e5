"""
User Cache Database Connection Pool

Manages the asyncpg connection pool for the cache database.
Creates the schema from schema.sql on initialization when it is missing.

Schema Evolution:
-----------------
When adding/removing/renaming tables in schema.sql:
1. Update the schema.sql file with new DDL
2. Update CacheDBPool.EXPECTED_TABLES with the new table names
3. For existing deployments drop and recreate the schema (the cache is
   rebuilt by the next full sync):
   DROP SCHEMA usercache CASCADE;
"""

from pathlib import Path
from typing import Optional

import asyncpg
from loguru import logger


class CacheDBPool:
    """User cache database connection pool manager."""

    EXPECTED_TABLES = {
        "users",
        "sync_metadata",
    }

    def __init__(self, connection_string: str, schema: str = "usercache"):
        """
        Initialize cache DB pool.

        Args:
            connection_string: PostgreSQL connection string for the cache database
            schema: Schema holding the cache tables
        """
        self.connection_string = connection_string
        self.schema = schema
        self.pool: Optional[asyncpg.Pool] = None
        self._pool_initialized = False

    async def initialize(self) -> None:
        """Create the pool, validate it and run migrations."""
        if self._pool_initialized and self.pool is not None:
            logger.debug("Cache DB pool already initialized")
            return

        try:
            logger.info("Initializing user cache database pool", schema=self.schema)

            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=1,
                max_size=5,
                command_timeout=60,
                timeout=15,
                max_cached_statement_lifetime=0,  # DDL runs on the same connections
            )

            async with self.pool.acquire() as conn:
                result = await conn.fetchval("SELECT 1")
                if result != 1:
                    raise RuntimeError("Pool validation query failed")

            await self._run_migrations()

            self._pool_initialized = True
            logger.success("User cache database initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize cache DB pool: {e}", exc_info=True)
            if self.pool:
                await self.pool.close()
                self.pool = None
            raise

    async def _existing_tables(self, conn) -> set:
        rows = await conn.fetch(
            """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = $1
            """,
            self.schema,
        )
        return {row["table_name"] for row in rows}

    async def _run_migrations(self) -> None:
        """Execute schema.sql unless every expected table already exists."""
        async with self.pool.acquire() as conn:
            existing_tables = await self._existing_tables(conn)
            if existing_tables >= self.EXPECTED_TABLES:
                logger.info("User cache schema present, skipping migrations", schema=self.schema)
                return

            missing_tables = self.EXPECTED_TABLES - existing_tables
            if existing_tables & self.EXPECTED_TABLES:
                logger.warning(
                    f"User cache schema is partially present, missing {sorted(missing_tables)} - re-running schema.sql"
                )
            else:
                logger.info("User cache schema not found - running migrations", schema=self.schema)

            schema_path = Path(__file__).parent / "schema.sql"
            if not schema_path.exists():
                raise FileNotFoundError(f"schema.sql not found at {schema_path}")

            await conn.execute(schema_path.read_text().replace("{schema}", self.schema))

            existing_tables = await self._existing_tables(conn)
            missing_tables = self.EXPECTED_TABLES - existing_tables
            if missing_tables:
                raise RuntimeError(f"Migration incomplete: missing tables {sorted(missing_tables)}")

            logger.success(f"All {len(self.EXPECTED_TABLES)} user cache tables verified successfully")

    async def close(self) -> None:
        """Close the connection pool gracefully."""
        if self.pool:
            logger.info("Closing user cache database pool")
            await self.pool.close()
            self.pool = None
            self._pool_initialized = False

    def acquire(self):
        """
        Acquire a database connection from the pool.

        Usage:
            async with pool.acquire() as conn:
                row = await conn.fetchrow("SELECT ...")
        """
        if not self.pool:
            raise RuntimeError("Cache DB pool not initialized - call initialize() first")
        return self.pool.acquire()

    async def health_check(self) -> bool:
        """True if a trivial query succeeds."""
        try:
            if not self.pool:
                return False
            async with self.pool.acquire() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Cache DB health check failed: {e}")
            return False
