from __future__ import annotations

from dataclasses import dataclass

JOB_STATUSES = ("pending", "processing", "completed", "failed")
ACTIVE_JOB_STATUSES = ("pending", "processing")

JOB_COMMON_FIELDS = (
    "id",
    "status",
    "attempt_count",
    "max_attempts",
    "run_after",
    "claim_token",
    "claim_worker_id",
    "claimed_at",
    "last_attempt_at",
    "last_error",
    "created_at",
    "updated_at",
)

@dataclass(frozen=True, slots=True)
class JobTable:
    """Column layout of one concrete job table served by the lease queue engine."""

    name: str
    table: str
    dedupe_fields: tuple[str, ...]
    payload_fields: tuple[str, ...]
    json_fields: frozenset[str] = frozenset()
    filter_fields: tuple[str, ...] = ()

    @property
    def columns(self) -> tuple[str, ...]:
        return JOB_COMMON_FIELDS + self.dedupe_fields + self.payload_fields

MIRROR_JOBS = JobTable(
    name="mirror",
    table="signal_mirror_jobs",
    dedupe_fields=("tenant_key", "connector_id", "source_message_id", "target_channel_id", "event_type"),
    payload_fields=(
        "source_channel_id",
        "source_guild_id",
        "target_guild_id",
        "content",
        "attachments",
        "source_created_at",
        "source_edited_at",
        "source_deleted_at",
    ),
    json_fields=frozenset({"attachments"}),
    filter_fields=("tenant_key", "connector_id"),
)

ROLE_SYNC_JOBS = JobTable(
    name="role_sync",
    table="role_sync_jobs",
    dedupe_fields=("user_id", "discord_user_id", "guild_id", "role_id", "action"),
    payload_fields=("source",),
    filter_fields=("user_id", "discord_user_id"),
)
