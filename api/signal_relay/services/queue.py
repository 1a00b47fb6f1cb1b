from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from signal_relay.core.config import Settings
from signal_relay.services.job_tables import MIRROR_JOBS, ROLE_SYNC_JOBS, JobTable
from signal_relay.services.repository import RepositoryConflictError, RepositorySession, validate_job_status

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 8
DEFAULT_RETRY_BASE_SECONDS = 5
DEFAULT_RETRY_MAX_SECONDS = 900
DEFAULT_CLAIM_LIMIT = 5
MAX_CLAIM_LIMIT = 20
MAX_LIST_LIMIT = 200


@dataclass(slots=True)
class EnqueueResult:
    enqueued: bool
    deduped: bool
    job_id: str | None = None
    reason: str | None = None


@dataclass(slots=True)
class CompletionResult:
    ok: bool
    ignored: bool
    reason: str | None = None
    status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def compute_retry_delay_seconds(
    attempt: int,
    *,
    base_seconds: int = DEFAULT_RETRY_BASE_SECONDS,
    max_seconds: int = DEFAULT_RETRY_MAX_SECONDS,
) -> int:
    exponent = max(0, attempt - 1)
    return min(max_seconds, base_seconds * (2**exponent))


def clamp_claim_limit(limit: int | None, *, default: int = DEFAULT_CLAIM_LIMIT, maximum: int = MAX_CLAIM_LIMIT) -> int:
    if limit is None:
        return default
    return max(1, min(int(limit), maximum))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def queue_options(settings: Settings) -> dict[str, int]:
    return {
        "max_attempts": settings.job_max_attempts,
        "retry_base_seconds": settings.job_retry_base_seconds,
        "retry_max_seconds": settings.job_retry_max_seconds,
        "claim_default_limit": settings.claim_default_limit,
        "claim_max_limit": settings.claim_max_limit,
    }


class LeaseQueue:
    """Durable lease queue over one job table.

    Jobs move pending -> processing on claim and processing -> completed, pending
    (retry with backoff) or failed on complete. A job is only completed by the
    holder of its current claim token.
    """

    def __init__(
        self,
        repository: Any,
        table: JobTable,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_seconds: int = DEFAULT_RETRY_BASE_SECONDS,
        retry_max_seconds: int = DEFAULT_RETRY_MAX_SECONDS,
        claim_default_limit: int = DEFAULT_CLAIM_LIMIT,
        claim_max_limit: int = MAX_CLAIM_LIMIT,
    ) -> None:
        self.repository = repository
        self.table = table
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.claim_default_limit = claim_default_limit
        self.claim_max_limit = claim_max_limit

    def retry_delay_seconds(self, attempt: int) -> int:
        return compute_retry_delay_seconds(
            attempt,
            base_seconds=self.retry_base_seconds,
            max_seconds=self.retry_max_seconds,
        )

    async def enqueue(
        self,
        session: RepositorySession,
        *,
        dedupe_key: Mapping[str, Any],
        payload: Mapping[str, Any],
        now: datetime,
    ) -> EnqueueResult:
        key: dict[str, Any] = {}
        for column in self.table.dedupe_fields:
            value = dedupe_key.get(column)
            if isinstance(value, str):
                value = value.strip()
            if not value:
                logger.warning("%s enqueue skipped missing=%s", self.table.name, column)
                return EnqueueResult(enqueued=False, deduped=False, reason=f"missing_{column}")
            key[column] = value

        fields = {column: payload.get(column) for column in self.table.payload_fields}

        for _ in range(2):
            existing = await session.find_active_job(self.table, key)
            if existing is not None:
                changes: dict[str, Any] = {**fields, "updated_at": now}
                if existing["status"] == "pending" and existing["run_after"] > now:
                    changes["run_after"] = now
                await session.update_job(self.table, existing["id"], changes)
                logger.debug("%s enqueue deduped job_id=%s status=%s", self.table.name, existing["id"], existing["status"])
                return EnqueueResult(enqueued=True, deduped=True, job_id=existing["id"])

            inserted = await session.insert_job(
                self.table,
                {
                    **key,
                    **fields,
                    "status": "pending",
                    "attempt_count": 0,
                    "max_attempts": self.max_attempts,
                    "run_after": now,
                    "created_at": now,
                    "updated_at": now,
                },
            )
            if inserted is not None:
                logger.debug("%s enqueued job_id=%s", self.table.name, inserted["id"])
                return EnqueueResult(enqueued=True, deduped=False, job_id=inserted["id"])

        raise RepositoryConflictError(f"{self.table.name} enqueue lost a dedupe race twice")

    async def claim(self, *, limit: int | None, worker_id: str, now: datetime | None = None) -> list[dict[str, Any]]:
        now = now or utcnow()
        bounded_limit = clamp_claim_limit(limit, default=self.claim_default_limit, maximum=self.claim_max_limit)
        claimed: list[dict[str, Any]] = []

        async with self.repository.session() as session:
            candidates = await session.select_ready_jobs(self.table, now, bounded_limit)
            for candidate in candidates:
                updated = await session.update_job(
                    self.table,
                    candidate["id"],
                    {
                        "status": "processing",
                        "claim_token": str(uuid4()),
                        "claim_worker_id": worker_id,
                        "claimed_at": now,
                        "last_attempt_at": now,
                        "attempt_count": int(candidate.get("attempt_count") or 0) + 1,
                        "last_error": None,
                        "updated_at": now,
                    },
                    expect_status="pending",
                )
                if updated is None:
                    continue
                claimed.append(await self.decorate_claimed(session, updated))

        if claimed:
            logger.info(
                "%s claimed jobs=%s worker=%s limit=%s",
                self.table.name,
                len(claimed),
                worker_id,
                bounded_limit,
            )
        return claimed

    async def complete(
        self,
        *,
        job_id: str,
        claim_token: str,
        success: bool,
        error: str | None = None,
        result_metadata: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> CompletionResult:
        now = now or utcnow()
        async with self.repository.session() as session:
            job = await session.get_job(self.table, job_id)
            if job is None:
                return self._ignored(job_id, "job_not_found")
            if job["status"] != "processing":
                return self._ignored(job_id, "job_not_processing")
            if not claim_token or job.get("claim_token") != claim_token:
                return self._ignored(job_id, "claim_token_mismatch")

            released: dict[str, Any] = {
                "claim_token": None,
                "claim_worker_id": None,
                "claimed_at": None,
                "updated_at": now,
            }
            attempt = int(job.get("attempt_count") or 0)
            max_attempts = int(job.get("max_attempts") or self.max_attempts)
            error_text = (error or "").strip() or "unknown_error"

            if success:
                changes = {**released, "status": "completed", "last_error": None}
            elif attempt >= max_attempts:
                changes = {**released, "status": "failed", "last_error": error_text}
            else:
                delay = self.retry_delay_seconds(attempt)
                changes = {
                    **released,
                    "status": "pending",
                    "run_after": now + timedelta(seconds=delay),
                    "last_error": error_text,
                }

            updated = await session.update_job(
                self.table,
                job_id,
                changes,
                expect_status="processing",
                expect_claim_token=claim_token,
            )
            if updated is None:
                return self._ignored(job_id, "claim_token_mismatch")

            if success:
                await self.on_completed(session, job, result_metadata or {}, now)

        status = changes["status"]
        if status == "completed":
            logger.info("%s job completed job_id=%s attempt=%s", self.table.name, job_id, attempt)
        elif status == "pending":
            logger.warning(
                "%s job retry scheduled job_id=%s attempt=%s/%s run_after=%s error=%s",
                self.table.name,
                job_id,
                attempt,
                max_attempts,
                changes["run_after"].isoformat(),
                error_text,
            )
        else:
            logger.error(
                "%s job failed job_id=%s attempt=%s/%s error=%s",
                self.table.name,
                job_id,
                attempt,
                max_attempts,
                error_text,
            )
        return CompletionResult(ok=True, ignored=False, status=status)

    async def wake_state(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        async with self.repository.session() as session:
            return await session.summarize_pending_jobs(self.table, now)

    async def stats(self, *, filters: Mapping[str, Any] | None = None, now: datetime | None = None) -> dict[str, int]:
        now = now or utcnow()
        async with self.repository.session() as session:
            return await session.count_jobs(self.table, filters=filters or {}, now=now)

    async def list_jobs(
        self,
        *,
        filters: Mapping[str, Any] | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        status = validate_job_status(status)
        bounded_limit = max(1, min(limit, MAX_LIST_LIMIT))
        async with self.repository.session() as session:
            return await session.list_jobs(self.table, filters=filters or {}, status=status, limit=bounded_limit)

    async def decorate_claimed(self, session: RepositorySession, job: dict[str, Any]) -> dict[str, Any]:
        return job

    async def on_completed(
        self,
        session: RepositorySession,
        job: dict[str, Any],
        result_metadata: Mapping[str, Any],
        now: datetime,
    ) -> None:
        return None

    def _ignored(self, job_id: str, reason: str) -> CompletionResult:
        logger.info("%s completion ignored job_id=%s reason=%s", self.table.name, job_id, reason)
        return CompletionResult(ok=False, ignored=True, reason=reason)


class MirrorQueue(LeaseQueue):
    """Lease queue for message mirror jobs; tracks the mirrored copy of each signal."""

    def __init__(self, repository: Any, **kwargs: Any) -> None:
        super().__init__(repository, MIRROR_JOBS, **kwargs)

    async def decorate_claimed(self, session: RepositorySession, job: dict[str, Any]) -> dict[str, Any]:
        mirrored = await session.get_mirrored_signal(
            job["tenant_key"],
            job["connector_id"],
            job["source_message_id"],
            job["target_channel_id"],
        )
        job["existing_mirrored_message_id"] = mirrored["mirrored_message_id"] if mirrored else None
        job["existing_mirrored_guild_id"] = mirrored.get("mirrored_guild_id") if mirrored else None
        return job

    async def on_completed(
        self,
        session: RepositorySession,
        job: dict[str, Any],
        result_metadata: Mapping[str, Any],
        now: datetime,
    ) -> None:
        existing = await session.get_mirrored_signal(
            job["tenant_key"],
            job["connector_id"],
            job["source_message_id"],
            job["target_channel_id"],
        )
        mirrored_message_id = _blank_to_none(result_metadata.get("mirrored_message_id"))
        mirrored_guild_id = _blank_to_none(result_metadata.get("mirrored_guild_id"))
        if existing is not None:
            mirrored_message_id = mirrored_message_id or existing["mirrored_message_id"]
            mirrored_guild_id = mirrored_guild_id or existing.get("mirrored_guild_id")
        if not mirrored_message_id:
            return

        await session.upsert_mirrored_signal(
            {
                "tenant_key": job["tenant_key"],
                "connector_id": job["connector_id"],
                "source_message_id": job["source_message_id"],
                "target_channel_id": job["target_channel_id"],
                "mirrored_message_id": mirrored_message_id,
                "mirrored_guild_id": mirrored_guild_id or job.get("target_guild_id"),
                "last_mirrored_at": now,
                "deleted_at": now if job["event_type"] == "delete" else None,
            }
        )


class RoleSyncQueue(LeaseQueue):
    """Lease queue for role grant / revoke jobs."""

    def __init__(self, repository: Any, **kwargs: Any) -> None:
        super().__init__(repository, ROLE_SYNC_JOBS, **kwargs)


def _blank_to_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
