from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]

from signal_relay.core.config import get_settings
from signal_relay.services.job_tables import JOB_STATUSES, JobTable
from signal_relay.services.store import InMemoryRepository


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


SIGNAL_COLUMNS = (
    "id",
    "tenant_key",
    "connector_id",
    "source_message_id",
    "source_channel_id",
    "source_guild_id",
    "content",
    "attachments",
    "created_at",
    "edited_at",
    "deleted_at",
)
SIGNAL_JSON_FIELDS = frozenset({"attachments"})
MIRRORED_SIGNAL_COLUMNS = (
    "tenant_key",
    "connector_id",
    "source_message_id",
    "target_channel_id",
    "mirrored_message_id",
    "mirrored_guild_id",
    "last_mirrored_at",
    "deleted_at",
)
WEBHOOK_EVENT_COLUMNS = (
    "provider",
    "event_id",
    "event_type",
    "payload",
    "payload_hash",
    "status",
    "attempt_count",
    "resolved_user_id",
    "subscription_status",
    "tier",
    "received_at",
    "last_attempt_at",
    "processed_at",
    "error",
)
WEBHOOK_JSON_FIELDS = frozenset({"payload"})
THREAD_COLUMNS = (
    "tenant_key",
    "connector_id",
    "thread_id",
    "parent_channel_id",
    "guild_id",
    "name",
    "archived",
    "locked",
    "member_count",
    "message_count",
    "updated_at",
    "deleted_at",
)


class RepositorySession(Protocol):
    """Operations available inside one atomic repository transaction."""

    async def get_signal(
        self, tenant_key: str, connector_id: str, source_message_id: str
    ) -> dict[str, Any] | None: ...

    async def insert_signal(self, row: dict[str, Any]) -> str | None: ...

    async def update_signal(self, signal_id: str, changes: dict[str, Any]) -> None: ...

    async def get_connector(self, tenant_key: str, connector_id: str) -> dict[str, Any] | None: ...

    async def list_channel_mappings(self, tenant_key: str, connector_id: str) -> list[dict[str, Any]]: ...

    async def list_tier_role_mappings(self) -> list[dict[str, Any]]: ...

    async def list_active_identity_links(self, user_id: str) -> list[dict[str, Any]]: ...

    async def upsert_guild(self, row: dict[str, Any]) -> None: ...

    async def upsert_channel(self, row: dict[str, Any]) -> None: ...

    async def upsert_thread(self, row: dict[str, Any]) -> bool: ...

    async def find_active_job(self, table: JobTable, dedupe_key: Mapping[str, Any]) -> dict[str, Any] | None: ...

    async def insert_job(self, table: JobTable, row: dict[str, Any]) -> dict[str, Any] | None: ...

    async def update_job(
        self,
        table: JobTable,
        job_id: str,
        changes: dict[str, Any],
        *,
        expect_status: str | None = None,
        expect_claim_token: str | None = None,
    ) -> dict[str, Any] | None: ...

    async def get_job(self, table: JobTable, job_id: str) -> dict[str, Any] | None: ...

    async def select_ready_jobs(self, table: JobTable, now: datetime, limit: int) -> list[dict[str, Any]]: ...

    async def list_jobs(
        self, table: JobTable, *, filters: Mapping[str, Any], status: str | None, limit: int
    ) -> list[dict[str, Any]]: ...

    async def count_jobs(self, table: JobTable, *, filters: Mapping[str, Any], now: datetime) -> dict[str, int]: ...

    async def summarize_pending_jobs(self, table: JobTable, now: datetime) -> dict[str, Any]: ...

    async def get_mirrored_signal(
        self, tenant_key: str, connector_id: str, source_message_id: str, target_channel_id: str
    ) -> dict[str, Any] | None: ...

    async def upsert_mirrored_signal(self, row: dict[str, Any]) -> None: ...

    async def get_webhook_event(self, provider: str, event_id: str) -> dict[str, Any] | None: ...

    async def insert_webhook_event(self, row: dict[str, Any]) -> bool: ...

    async def update_webhook_event(self, provider: str, event_id: str, changes: dict[str, Any]) -> None: ...

    async def list_webhook_events(self, provider: str, *, status: str | None, limit: int) -> list[dict[str, Any]]: ...


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def session(self) -> AsyncIterator[PostgresSession]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                yield PostgresSession(conn)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("SR_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc


class PostgresSession:
    def __init__(self, conn: asyncpg.Connection) -> None:
        self.conn = conn

    async def get_signal(self, tenant_key: str, connector_id: str, source_message_id: str) -> dict[str, Any] | None:
        row = await self.conn.fetchrow(
            f"""
            select {_select_list(SIGNAL_COLUMNS)}
            from signals
            where tenant_key = $1 and connector_id = $2 and source_message_id = $3
            for update
            """,
            tenant_key,
            connector_id,
            source_message_id,
        )
        return _row_to_dict(row, SIGNAL_JSON_FIELDS) if row else None

    async def insert_signal(self, row: dict[str, Any]) -> str | None:
        columns = [column for column in SIGNAL_COLUMNS if column != "id"]
        placeholders, args = _bind_values(columns, row, SIGNAL_JSON_FIELDS)
        return await self.conn.fetchval(
            f"""
            insert into signals ({", ".join(columns)})
            values ({placeholders})
            on conflict (tenant_key, connector_id, source_message_id) do nothing
            returning id::text
            """,
            *args,
        )

    async def update_signal(self, signal_id: str, changes: dict[str, Any]) -> None:
        if not changes:
            return
        assignments, args = _set_clause(changes, SIGNAL_JSON_FIELDS, start=2)
        await self.conn.execute(
            f"update signals set {assignments} where id = $1::uuid",
            signal_id,
            *args,
        )

    async def get_connector(self, tenant_key: str, connector_id: str) -> dict[str, Any] | None:
        row = await self.conn.fetchrow(
            """
            select tenant_key, connector_id, forward_enabled
            from connectors
            where tenant_key = $1 and connector_id = $2
            """,
            tenant_key,
            connector_id,
        )
        return dict(row) if row else None

    async def list_channel_mappings(self, tenant_key: str, connector_id: str) -> list[dict[str, Any]]:
        rows = await self.conn.fetch(
            """
            select source_channel_id, target_channel_id, target_guild_id
            from connector_mappings
            where tenant_key = $1 and connector_id = $2
            order by created_at asc
            """,
            tenant_key,
            connector_id,
        )
        return [dict(row) for row in rows]

    async def list_tier_role_mappings(self) -> list[dict[str, Any]]:
        rows = await self.conn.fetch(
            """
            select tier, guild_id, role_id
            from tier_role_mappings
            where enabled = true
            order by tier asc, updated_at asc
            """
        )
        return [dict(row) for row in rows]

    async def list_active_identity_links(self, user_id: str) -> list[dict[str, Any]]:
        rows = await self.conn.fetch(
            """
            select user_id, discord_user_id
            from identity_links
            where user_id = $1 and unlinked_at is null
            order by linked_at asc
            """,
            user_id,
        )
        return [dict(row) for row in rows]

    async def upsert_guild(self, row: dict[str, Any]) -> None:
        await self.conn.execute(
            """
            insert into guilds (tenant_key, connector_id, guild_id, name, updated_at)
            values ($1, $2, $3, $4, $5)
            on conflict (tenant_key, connector_id, guild_id) do update
            set name = excluded.name, updated_at = excluded.updated_at
            """,
            row["tenant_key"],
            row["connector_id"],
            row["guild_id"],
            row["name"],
            row["updated_at"],
        )

    async def upsert_channel(self, row: dict[str, Any]) -> None:
        await self.conn.execute(
            """
            insert into channels (
              tenant_key, connector_id, channel_id, guild_id, name, type, parent_id, position, updated_at
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            on conflict (tenant_key, connector_id, channel_id) do update
            set
              guild_id = excluded.guild_id,
              name = excluded.name,
              type = coalesce(excluded.type, channels.type),
              parent_id = coalesce(excluded.parent_id, channels.parent_id),
              position = coalesce(excluded.position, channels.position),
              updated_at = excluded.updated_at
            """,
            row["tenant_key"],
            row["connector_id"],
            row["channel_id"],
            row["guild_id"],
            row["name"],
            row.get("type"),
            row.get("parent_id"),
            row.get("position"),
            row["updated_at"],
        )

    async def upsert_thread(self, row: dict[str, Any]) -> bool:
        columns = list(THREAD_COLUMNS)
        placeholders, args = _bind_values(columns, row, frozenset())
        updates = ", ".join(
            f"{column} = excluded.{column}"
            for column in columns
            if column not in {"tenant_key", "connector_id", "thread_id"}
        )
        inserted = await self.conn.fetchval(
            f"""
            insert into threads ({", ".join(columns)})
            values ({placeholders})
            on conflict (tenant_key, connector_id, thread_id) do update
            set {updates}
            returning (xmax = 0)
            """,
            *args,
        )
        return bool(inserted)

    async def find_active_job(self, table: JobTable, dedupe_key: Mapping[str, Any]) -> dict[str, Any] | None:
        conditions = " and ".join(f"{column} = ${index}" for index, column in enumerate(table.dedupe_fields, start=1))
        row = await self.conn.fetchrow(
            f"""
            select {_select_list(table.columns)}
            from {table.table}
            where {conditions}
              and status in ('pending', 'processing')
            order by case when status = 'pending' then 0 else 1 end, created_at asc
            limit 1
            for update
            """,
            *[dedupe_key[column] for column in table.dedupe_fields],
        )
        return _row_to_dict(row, table.json_fields) if row else None

    async def insert_job(self, table: JobTable, row: dict[str, Any]) -> dict[str, Any] | None:
        columns = [column for column in table.columns if column != "id" and column in row]
        placeholders, args = _bind_values(columns, row, table.json_fields)
        inserted = await self.conn.fetchrow(
            f"""
            insert into {table.table} ({", ".join(columns)})
            values ({placeholders})
            on conflict do nothing
            returning {_select_list(table.columns)}
            """,
            *args,
        )
        return _row_to_dict(inserted, table.json_fields) if inserted else None

    async def update_job(
        self,
        table: JobTable,
        job_id: str,
        changes: dict[str, Any],
        *,
        expect_status: str | None = None,
        expect_claim_token: str | None = None,
    ) -> dict[str, Any] | None:
        if not _is_uuid(job_id):
            return None
        assignments, args = _set_clause(changes, table.json_fields, start=2)
        conditions = ["id = $1::uuid"]
        next_index = len(args) + 2
        if expect_status is not None:
            conditions.append(f"status = ${next_index}")
            args.append(expect_status)
            next_index += 1
        if expect_claim_token is not None:
            conditions.append(f"claim_token = ${next_index}")
            args.append(expect_claim_token)
        row = await self.conn.fetchrow(
            f"""
            update {table.table}
            set {assignments}
            where {" and ".join(conditions)}
            returning {_select_list(table.columns)}
            """,
            job_id,
            *args,
        )
        return _row_to_dict(row, table.json_fields) if row else None

    async def get_job(self, table: JobTable, job_id: str) -> dict[str, Any] | None:
        if not _is_uuid(job_id):
            return None
        row = await self.conn.fetchrow(
            f"""
            select {_select_list(table.columns)}
            from {table.table}
            where id = $1::uuid
            for update
            """,
            job_id,
        )
        return _row_to_dict(row, table.json_fields) if row else None

    async def select_ready_jobs(self, table: JobTable, now: datetime, limit: int) -> list[dict[str, Any]]:
        rows = await self.conn.fetch(
            f"""
            select {_select_list(table.columns)}
            from {table.table}
            where status = 'pending' and run_after <= $1
            order by run_after asc, created_at asc
            limit $2
            for update skip locked
            """,
            now,
            limit,
        )
        return [_row_to_dict(row, table.json_fields) for row in rows]

    async def list_jobs(
        self, table: JobTable, *, filters: Mapping[str, Any], status: str | None, limit: int
    ) -> list[dict[str, Any]]:
        conditions, args = _filter_conditions(table, filters)
        if status is not None:
            args.append(status)
            conditions.append(f"status = ${len(args)}")
        args.append(limit)
        where = f"where {' and '.join(conditions)}" if conditions else ""
        rows = await self.conn.fetch(
            f"""
            select {_select_list(table.columns)}
            from {table.table}
            {where}
            order by created_at desc
            limit ${len(args)}
            """,
            *args,
        )
        return [_row_to_dict(row, table.json_fields) for row in rows]

    async def count_jobs(self, table: JobTable, *, filters: Mapping[str, Any], now: datetime) -> dict[str, int]:
        conditions, args = _filter_conditions(table, filters)
        args.append(now)
        where = f"where {' and '.join(conditions)}" if conditions else ""
        row = await self.conn.fetchrow(
            f"""
            select
              count(*) filter (where status = 'pending') as pending,
              count(*) filter (where status = 'pending' and run_after <= ${len(args)}) as pending_ready,
              count(*) filter (where status = 'processing') as processing,
              count(*) filter (where status = 'completed') as completed,
              count(*) filter (where status = 'failed') as failed,
              count(*) as total
            from {table.table}
            {where}
            """,
            *args,
        )
        return {key: int(row[key] or 0) for key in ("pending", "pending_ready", "processing", "completed", "failed", "total")}

    async def summarize_pending_jobs(self, table: JobTable, now: datetime) -> dict[str, Any]:
        row = await self.conn.fetchrow(
            f"""
            select
              count(*) filter (where run_after <= $1) as pending_ready,
              count(*) as pending_total,
              min(run_after) as next_run_after,
              max(updated_at) as wake_updated_at
            from {table.table}
            where status = 'pending'
            """,
            now,
        )
        return {
            "pending_ready": int(row["pending_ready"] or 0),
            "pending_total": int(row["pending_total"] or 0),
            "next_run_after": row["next_run_after"],
            "wake_updated_at": row["wake_updated_at"],
        }

    async def get_mirrored_signal(
        self, tenant_key: str, connector_id: str, source_message_id: str, target_channel_id: str
    ) -> dict[str, Any] | None:
        row = await self.conn.fetchrow(
            f"""
            select {", ".join(MIRRORED_SIGNAL_COLUMNS)}
            from mirrored_signals
            where tenant_key = $1 and connector_id = $2 and source_message_id = $3 and target_channel_id = $4
            """,
            tenant_key,
            connector_id,
            source_message_id,
            target_channel_id,
        )
        return dict(row) if row else None

    async def upsert_mirrored_signal(self, row: dict[str, Any]) -> None:
        columns = list(MIRRORED_SIGNAL_COLUMNS)
        placeholders, args = _bind_values(columns, row, frozenset())
        await self.conn.execute(
            f"""
            insert into mirrored_signals ({", ".join(columns)})
            values ({placeholders})
            on conflict (tenant_key, connector_id, source_message_id, target_channel_id) do update
            set
              mirrored_message_id = excluded.mirrored_message_id,
              mirrored_guild_id = excluded.mirrored_guild_id,
              last_mirrored_at = excluded.last_mirrored_at,
              deleted_at = excluded.deleted_at
            """,
            *args,
        )

    async def get_webhook_event(self, provider: str, event_id: str) -> dict[str, Any] | None:
        row = await self.conn.fetchrow(
            f"""
            select {_select_list(WEBHOOK_EVENT_COLUMNS)}
            from webhook_events
            where provider = $1 and event_id = $2
            for update
            """,
            provider,
            event_id,
        )
        return _row_to_dict(row, WEBHOOK_JSON_FIELDS) if row else None

    async def insert_webhook_event(self, row: dict[str, Any]) -> bool:
        columns = [column for column in WEBHOOK_EVENT_COLUMNS if column in row]
        placeholders, args = _bind_values(columns, row, WEBHOOK_JSON_FIELDS)
        inserted = await self.conn.fetchval(
            f"""
            insert into webhook_events ({", ".join(columns)})
            values ({placeholders})
            on conflict (provider, event_id) do nothing
            returning event_id
            """,
            *args,
        )
        return inserted is not None

    async def update_webhook_event(self, provider: str, event_id: str, changes: dict[str, Any]) -> None:
        if not changes:
            return
        assignments, args = _set_clause(changes, WEBHOOK_JSON_FIELDS, start=3)
        await self.conn.execute(
            f"update webhook_events set {assignments} where provider = $1 and event_id = $2",
            provider,
            event_id,
            *args,
        )

    async def list_webhook_events(self, provider: str, *, status: str | None, limit: int) -> list[dict[str, Any]]:
        rows = await self.conn.fetch(
            f"""
            select {_select_list(WEBHOOK_EVENT_COLUMNS)}
            from webhook_events
            where provider = $1 and ($2::text is null or status::text = $2)
            order by received_at desc
            limit $3
            """,
            provider,
            status,
            limit,
        )
        return [_row_to_dict(row, WEBHOOK_JSON_FIELDS) for row in rows]


def _select_list(columns: tuple[str, ...] | list[str]) -> str:
    rendered: list[str] = []
    for column in columns:
        if column == "id":
            rendered.append("id::text as id")
        elif column == "status":
            rendered.append("status::text as status")
        else:
            rendered.append(column)
    return ", ".join(rendered)


def _bind_values(columns: list[str], row: Mapping[str, Any], json_fields: frozenset[str]) -> tuple[str, list[Any]]:
    placeholders: list[str] = []
    args: list[Any] = []
    for index, column in enumerate(columns, start=1):
        value = row.get(column)
        if column in json_fields:
            placeholders.append(f"${index}::jsonb")
            args.append(json.dumps(value if value is not None else _json_default(column)))
        else:
            placeholders.append(f"${index}")
            args.append(value)
    return ", ".join(placeholders), args


def _set_clause(changes: Mapping[str, Any], json_fields: frozenset[str], *, start: int) -> tuple[str, list[Any]]:
    assignments: list[str] = []
    args: list[Any] = []
    for offset, (column, value) in enumerate(changes.items()):
        index = start + offset
        if column in json_fields:
            assignments.append(f"{column} = ${index}::jsonb")
            args.append(json.dumps(value if value is not None else _json_default(column)))
        else:
            assignments.append(f"{column} = ${index}")
            args.append(value)
    return ", ".join(assignments), args


def _filter_conditions(table: JobTable, filters: Mapping[str, Any]) -> tuple[list[str], list[Any]]:
    conditions: list[str] = []
    args: list[Any] = []
    for column in table.filter_fields:
        value = filters.get(column)
        if value is None:
            continue
        args.append(value)
        conditions.append(f"{column} = ${len(args)}")
    return conditions, args


def _row_to_dict(row: asyncpg.Record, json_fields: frozenset[str]) -> dict[str, Any]:
    data = dict(row)
    for column in json_fields:
        if column not in data:
            continue
        value = data[column]
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                value = None
        data[column] = value if value is not None else _json_default(column)
    return data


def _json_default(column: str) -> Any:
    return {} if column == "payload" else []


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def validate_job_status(status: str | None) -> str | None:
    if status is None:
        return None
    if status not in JOB_STATUSES:
        raise RepositoryValidationError(f"status must be one of: {', '.join(JOB_STATUSES)}")
    return status


@lru_cache
def get_repository() -> PostgresRepository | InMemoryRepository:
    settings = get_settings()
    if settings.storage_backend == "memory":
        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
