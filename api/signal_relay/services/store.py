from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from signal_relay.services.job_tables import ACTIVE_JOB_STATUSES, JobTable


@dataclass(slots=True)
class MemoryState:
    connectors: dict[tuple[str, str], dict[str, Any]] = field(default_factory=dict)
    channel_mappings: list[dict[str, Any]] = field(default_factory=list)
    tier_role_mappings: list[dict[str, Any]] = field(default_factory=list)
    identity_links: list[dict[str, Any]] = field(default_factory=list)
    signals: dict[tuple[str, str, str], dict[str, Any]] = field(default_factory=dict)
    guilds: dict[tuple[str, str, str], dict[str, Any]] = field(default_factory=dict)
    channels: dict[tuple[str, str, str], dict[str, Any]] = field(default_factory=dict)
    threads: dict[tuple[str, str, str], dict[str, Any]] = field(default_factory=dict)
    jobs: dict[str, dict[str, dict[str, Any]]] = field(default_factory=dict)
    mirrored_signals: dict[tuple[str, str, str, str], dict[str, Any]] = field(default_factory=dict)
    webhook_events: dict[tuple[str, str], dict[str, Any]] = field(default_factory=dict)
    sequence: int = 0


class InMemoryRepository:
    """Process-local backend for tests and single-node development.

    Sessions are serialized by one lock and work on a copy of the state that is
    only published when the session body finishes without raising.
    """

    def __init__(self) -> None:
        self.state = MemoryState()
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        return None

    @asynccontextmanager
    async def session(self) -> AsyncIterator[InMemorySession]:
        async with self._lock:
            working = copy.deepcopy(self.state)
            yield InMemorySession(working)
            self.state = working

    # Seeding helpers for the collaborator-owned tables.

    def add_connector(self, tenant_key: str, connector_id: str, *, forward_enabled: bool = True) -> None:
        self.state.connectors[(tenant_key, connector_id)] = {
            "tenant_key": tenant_key,
            "connector_id": connector_id,
            "forward_enabled": forward_enabled,
        }

    def add_channel_mapping(
        self,
        tenant_key: str,
        connector_id: str,
        source_channel_id: str,
        target_channel_id: str,
        target_guild_id: str | None = None,
    ) -> None:
        self.state.channel_mappings.append(
            {
                "tenant_key": tenant_key,
                "connector_id": connector_id,
                "source_channel_id": source_channel_id,
                "target_channel_id": target_channel_id,
                "target_guild_id": target_guild_id,
            }
        )

    def add_tier_role_mapping(self, tier: str, guild_id: str, role_id: str, *, enabled: bool = True) -> None:
        self.state.tier_role_mappings.append(
            {"tier": tier, "guild_id": guild_id, "role_id": role_id, "enabled": enabled}
        )

    def add_identity_link(self, user_id: str, discord_user_id: str, *, unlinked: bool = False) -> None:
        self.state.identity_links.append(
            {"user_id": user_id, "discord_user_id": discord_user_id, "unlinked": unlinked}
        )


class InMemorySession:
    def __init__(self, state: MemoryState) -> None:
        self.state = state

    async def get_signal(self, tenant_key: str, connector_id: str, source_message_id: str) -> dict[str, Any] | None:
        row = self.state.signals.get((tenant_key, connector_id, source_message_id))
        return copy.deepcopy(row) if row else None

    async def insert_signal(self, row: dict[str, Any]) -> str | None:
        key = (row["tenant_key"], row["connector_id"], row["source_message_id"])
        if key in self.state.signals:
            return None
        signal_id = str(uuid4())
        self.state.signals[key] = {**copy.deepcopy(row), "id": signal_id}
        return signal_id

    async def update_signal(self, signal_id: str, changes: dict[str, Any]) -> None:
        for row in self.state.signals.values():
            if row["id"] == signal_id:
                row.update(copy.deepcopy(changes))
                return

    async def get_connector(self, tenant_key: str, connector_id: str) -> dict[str, Any] | None:
        row = self.state.connectors.get((tenant_key, connector_id))
        return dict(row) if row else None

    async def list_channel_mappings(self, tenant_key: str, connector_id: str) -> list[dict[str, Any]]:
        return [
            {
                "source_channel_id": row["source_channel_id"],
                "target_channel_id": row["target_channel_id"],
                "target_guild_id": row.get("target_guild_id"),
            }
            for row in self.state.channel_mappings
            if row["tenant_key"] == tenant_key and row["connector_id"] == connector_id
        ]

    async def list_tier_role_mappings(self) -> list[dict[str, Any]]:
        return [
            {"tier": row["tier"], "guild_id": row["guild_id"], "role_id": row["role_id"]}
            for row in self.state.tier_role_mappings
            if row.get("enabled", True)
        ]

    async def list_active_identity_links(self, user_id: str) -> list[dict[str, Any]]:
        return [
            {"user_id": row["user_id"], "discord_user_id": row["discord_user_id"]}
            for row in self.state.identity_links
            if row["user_id"] == user_id and not row.get("unlinked")
        ]

    async def upsert_guild(self, row: dict[str, Any]) -> None:
        key = (row["tenant_key"], row["connector_id"], row["guild_id"])
        self.state.guilds[key] = dict(row)

    async def upsert_channel(self, row: dict[str, Any]) -> None:
        key = (row["tenant_key"], row["connector_id"], row["channel_id"])
        merged = dict(self.state.channels.get(key, {}))
        for column, value in row.items():
            if value is None and column in {"type", "parent_id", "position"}:
                merged.setdefault(column, None)
                continue
            merged[column] = value
        self.state.channels[key] = merged

    async def upsert_thread(self, row: dict[str, Any]) -> bool:
        key = (row["tenant_key"], row["connector_id"], row["thread_id"])
        created = key not in self.state.threads
        self.state.threads[key] = dict(row)
        return created

    async def find_active_job(self, table: JobTable, dedupe_key: Mapping[str, Any]) -> dict[str, Any] | None:
        matches = [
            job
            for job in self._jobs(table).values()
            if job["status"] in ACTIVE_JOB_STATUSES
            and all(job[column] == dedupe_key[column] for column in table.dedupe_fields)
        ]
        if not matches:
            return None
        matches.sort(key=lambda job: (job["status"] != "pending", job["_sequence"]))
        return _public(matches[0])

    async def insert_job(self, table: JobTable, row: dict[str, Any]) -> dict[str, Any] | None:
        if row.get("status", "pending") in ACTIVE_JOB_STATUSES:
            existing = await self.find_active_job(table, row)
            if existing is not None:
                return None
        self.state.sequence += 1
        job: dict[str, Any] = {column: None for column in table.columns}
        job.update(copy.deepcopy(row))
        job["id"] = str(uuid4())
        job["_sequence"] = self.state.sequence
        self._jobs(table)[job["id"]] = job
        return _public(job)

    async def update_job(
        self,
        table: JobTable,
        job_id: str,
        changes: dict[str, Any],
        *,
        expect_status: str | None = None,
        expect_claim_token: str | None = None,
    ) -> dict[str, Any] | None:
        job = self._jobs(table).get(job_id)
        if job is None:
            return None
        if expect_status is not None and job["status"] != expect_status:
            return None
        if expect_claim_token is not None and job["claim_token"] != expect_claim_token:
            return None
        job.update(copy.deepcopy(changes))
        return _public(job)

    async def get_job(self, table: JobTable, job_id: str) -> dict[str, Any] | None:
        job = self._jobs(table).get(job_id)
        return _public(job) if job else None

    async def select_ready_jobs(self, table: JobTable, now: datetime, limit: int) -> list[dict[str, Any]]:
        ready = [job for job in self._jobs(table).values() if job["status"] == "pending" and job["run_after"] <= now]
        ready.sort(key=lambda job: (job["run_after"], job["created_at"], job["_sequence"]))
        return [_public(job) for job in ready[:limit]]

    async def list_jobs(
        self, table: JobTable, *, filters: Mapping[str, Any], status: str | None, limit: int
    ) -> list[dict[str, Any]]:
        jobs = [
            job
            for job in self._matching(table, filters)
            if status is None or job["status"] == status
        ]
        jobs.sort(key=lambda job: (job["created_at"], job["_sequence"]), reverse=True)
        return [_public(job) for job in jobs[:limit]]

    async def count_jobs(self, table: JobTable, *, filters: Mapping[str, Any], now: datetime) -> dict[str, int]:
        counts = {"pending": 0, "pending_ready": 0, "processing": 0, "completed": 0, "failed": 0, "total": 0}
        for job in self._matching(table, filters):
            counts[job["status"]] += 1
            counts["total"] += 1
            if job["status"] == "pending" and job["run_after"] <= now:
                counts["pending_ready"] += 1
        return counts

    async def summarize_pending_jobs(self, table: JobTable, now: datetime) -> dict[str, Any]:
        pending = [job for job in self._jobs(table).values() if job["status"] == "pending"]
        return {
            "pending_ready": sum(1 for job in pending if job["run_after"] <= now),
            "pending_total": len(pending),
            "next_run_after": min((job["run_after"] for job in pending), default=None),
            "wake_updated_at": max((job["updated_at"] for job in pending), default=None),
        }

    async def get_mirrored_signal(
        self, tenant_key: str, connector_id: str, source_message_id: str, target_channel_id: str
    ) -> dict[str, Any] | None:
        row = self.state.mirrored_signals.get((tenant_key, connector_id, source_message_id, target_channel_id))
        return dict(row) if row else None

    async def upsert_mirrored_signal(self, row: dict[str, Any]) -> None:
        key = (row["tenant_key"], row["connector_id"], row["source_message_id"], row["target_channel_id"])
        self.state.mirrored_signals[key] = dict(row)

    async def get_webhook_event(self, provider: str, event_id: str) -> dict[str, Any] | None:
        row = self.state.webhook_events.get((provider, event_id))
        return copy.deepcopy(row) if row else None

    async def insert_webhook_event(self, row: dict[str, Any]) -> bool:
        key = (row["provider"], row["event_id"])
        if key in self.state.webhook_events:
            return False
        event = {
            "payload_hash": None,
            "status": "received",
            "attempt_count": 0,
            "resolved_user_id": None,
            "subscription_status": None,
            "tier": None,
            "last_attempt_at": None,
            "processed_at": None,
            "error": None,
        }
        event.update(copy.deepcopy(row))
        self.state.webhook_events[key] = event
        return True

    async def update_webhook_event(self, provider: str, event_id: str, changes: dict[str, Any]) -> None:
        event = self.state.webhook_events.get((provider, event_id))
        if event is not None:
            event.update(copy.deepcopy(changes))

    async def list_webhook_events(self, provider: str, *, status: str | None, limit: int) -> list[dict[str, Any]]:
        events = [
            event
            for event in self.state.webhook_events.values()
            if event["provider"] == provider and (status is None or event["status"] == status)
        ]
        events.sort(key=lambda event: event["received_at"], reverse=True)
        return [copy.deepcopy(event) for event in events[:limit]]

    def _jobs(self, table: JobTable) -> dict[str, dict[str, Any]]:
        return self.state.jobs.setdefault(table.table, {})

    def _matching(self, table: JobTable, filters: Mapping[str, Any]) -> list[dict[str, Any]]:
        active_filters = {column: filters.get(column) for column in table.filter_fields if filters.get(column) is not None}
        return [
            job
            for job in self._jobs(table).values()
            if all(job[column] == value for column, value in active_filters.items())
        ]


def _public(job: dict[str, Any]) -> dict[str, Any]:
    return {key: copy.deepcopy(value) for key, value in job.items() if not key.startswith("_")}
