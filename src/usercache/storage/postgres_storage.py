"""
PostgreSQL Cache Storage

asyncpg-backed CacheStorage. Users live in {schema}.users keyed by user_id,
the sync metadata in the {schema}.sync_metadata singleton row.

Batch upserts lock the affected rows, merge in Python with merge_user and
write the merged rows back, all inside one transaction.
"""

import json
from datetime import datetime
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional

import asyncpg
from loguru import logger

from usercache.enums import SyncStatus
from usercache.errors import CacheStorageError
from usercache.models import CachedUser
from usercache.models import DIRECTORY_FIELDS
from usercache.models import SyncMetadata
from usercache.models import merge_user
from usercache.storage.base import CacheStorage

USER_COLUMNS = (
    "user_id",
    "user_principal_name",
    *DIRECTORY_FIELDS,
    "is_deleted",
    "last_synced_at",
    "activity",
    "last_stats_update",
)

METADATA_COLUMNS = (
    "delta_token",
    "last_full_sync_at",
    "last_delta_sync_at",
    "last_stats_refresh_at",
    "last_sync_status",
    "last_sync_error",
    "last_sync_user_count",
)

DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def _json_default(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _row_to_user(row) -> CachedUser:
    data = dict(row)
    activity = data.get("activity")
    if isinstance(activity, str):
        data["activity"] = json.loads(activity)
    elif activity is None:
        data["activity"] = {}
    return CachedUser.model_validate(data)


def _user_to_params(user: CachedUser) -> List[Any]:
    values = []
    for column in USER_COLUMNS:
        value = getattr(user, column)
        if column == "activity":
            value = json.dumps(value, default=_json_default)
        values.append(value)
    return values


class PostgresCacheStorage(CacheStorage):
    """CacheStorage over an asyncpg pool (CacheDBPool or asyncpg.Pool)."""

    def __init__(self, pool, schema: str = "usercache"):
        """
        Args:
            pool: Object exposing acquire() as an async context manager
            schema: Schema holding the users and sync_metadata tables
        """
        self.pool = pool
        self.schema = schema
        self.users_table = f"{schema}.users"
        self.metadata_table = f"{schema}.sync_metadata"

        placeholders = ", ".join(
            f"${i}::jsonb" if column == "activity" else f"${i}" for i, column in enumerate(USER_COLUMNS, start=1)
        )
        assignments = ", ".join(f"{column} = EXCLUDED.{column}" for column in USER_COLUMNS[1:])
        self._upsert_sql = (
            f"INSERT INTO {self.users_table} ({', '.join(USER_COLUMNS)}) "
            f"VALUES ({placeholders}) "
            f"ON CONFLICT (user_id) DO UPDATE SET {assignments}"
        )

    async def get_all_users(self, include_deleted: bool = False) -> List[CachedUser]:
        query = f"SELECT * FROM {self.users_table}"
        if not include_deleted:
            query += " WHERE is_deleted = FALSE"
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query)
        except DB_ERRORS as e:
            raise CacheStorageError(f"Failed to read cached users: {e}") from e
        return [_row_to_user(row) for row in rows]

    async def get_user_by_upn(self, upn: str) -> Optional[CachedUser]:
        key = (upn or "").strip().lower()
        if not key:
            return None
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT * FROM {self.users_table} WHERE lower(user_principal_name) = $1 "
                    "ORDER BY is_deleted ASC LIMIT 1",
                    key,
                )
        except DB_ERRORS as e:
            raise CacheStorageError(f"Failed to read cached user {upn}: {e}") from e
        return _row_to_user(row) if row else None

    async def merge_activity(
        self, upn: str, activity: Dict[str, Optional[datetime]], updated_at: datetime
    ) -> Optional[CachedUser]:
        key = (upn or "").strip().lower()
        if not key:
            return None
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"SELECT * FROM {self.users_table} WHERE lower(user_principal_name) = $1 "
                        "ORDER BY is_deleted ASC LIMIT 1 FOR UPDATE",
                        key,
                    )
                    if row is None or row["is_deleted"]:
                        return _row_to_user(row) if row else None

                    row = await conn.fetchrow(
                        f"UPDATE {self.users_table} "
                        "SET activity = COALESCE(activity, '{}'::jsonb) || $2::jsonb, last_stats_update = $3 "
                        "WHERE user_id = $1 RETURNING *",
                        row["user_id"],
                        json.dumps(activity, default=_json_default),
                        updated_at,
                    )
        except DB_ERRORS as e:
            raise CacheStorageError(f"Failed to store activity for {upn}: {e}") from e
        return _row_to_user(row)

    async def upsert_user(self, user: CachedUser) -> None:
        await self.upsert_users([user])

    async def upsert_users(self, users: List[CachedUser]) -> int:
        if not users:
            return 0

        user_ids = list({user.user_id for user in users})
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    rows = await conn.fetch(
                        f"SELECT * FROM {self.users_table} WHERE user_id = ANY($1::text[]) FOR UPDATE",
                        user_ids,
                    )
                    merged: Dict[str, CachedUser] = {row["user_id"]: _row_to_user(row) for row in rows}
                    for user in users:
                        merged[user.user_id] = merge_user(merged.get(user.user_id), user)

                    await conn.executemany(self._upsert_sql, [_user_to_params(u) for u in merged.values()])
        except DB_ERRORS as e:
            raise CacheStorageError(f"Failed to upsert {len(users)} cached users: {e}") from e

        logger.debug("Upserted users into PostgreSQL cache", count=len(users), distinct=len(merged))
        return len(users)

    async def tombstone_users(self, user_ids: Iterable[str]) -> int:
        ids = list(user_ids)
        if not ids:
            return 0
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute(
                    f"UPDATE {self.users_table} SET is_deleted = TRUE "
                    "WHERE user_id = ANY($1::text[]) AND is_deleted = FALSE",
                    ids,
                )
        except DB_ERRORS as e:
            raise CacheStorageError(f"Failed to tombstone cached users: {e}") from e
        return _affected_rows(result)

    async def clear_all(self) -> int:
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    result = await conn.execute(f"DELETE FROM {self.users_table}")
                    await conn.execute(f"DELETE FROM {self.metadata_table}")
        except DB_ERRORS as e:
            raise CacheStorageError(f"Failed to clear user cache: {e}") from e

        removed = _affected_rows(result)
        logger.info("PostgreSQL cache cleared", removed=removed)
        return removed

    async def get_sync_metadata(self) -> SyncMetadata:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(f"SELECT * FROM {self.metadata_table} WHERE id = 1")
        except DB_ERRORS as e:
            raise CacheStorageError(f"Failed to read sync metadata: {e}") from e

        if row is None:
            return SyncMetadata()
        data = {column: row[column] for column in METADATA_COLUMNS}
        if data["last_sync_status"] is not None:
            data["last_sync_status"] = SyncStatus(data["last_sync_status"])
        return SyncMetadata.model_validate(data)

    async def update_sync_metadata(self, metadata: SyncMetadata) -> None:
        values = [getattr(metadata, column) for column in METADATA_COLUMNS]
        status_index = METADATA_COLUMNS.index("last_sync_status")
        if values[status_index] is not None:
            values[status_index] = values[status_index].value

        placeholders = ", ".join(f"${i}" for i in range(1, len(METADATA_COLUMNS) + 1))
        assignments = ", ".join(f"{column} = EXCLUDED.{column}" for column in METADATA_COLUMNS)
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    f"INSERT INTO {self.metadata_table} (id, {', '.join(METADATA_COLUMNS)}) "
                    f"VALUES (1, {placeholders}) "
                    f"ON CONFLICT (id) DO UPDATE SET {assignments}",
                    *values,
                )
        except DB_ERRORS as e:
            raise CacheStorageError(f"Failed to write sync metadata: {e}") from e


def _affected_rows(status: str) -> int:
    """Row count from an asyncpg command status such as 'UPDATE 3' or 'DELETE 0'."""
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except ValueError:
        return 0
