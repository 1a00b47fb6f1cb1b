from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ClaimRequest(BaseModel):
    worker_id: str = Field(min_length=1, max_length=200)
    limit: int | None = None


class MirrorJobOut(BaseModel):
    id: str
    tenant_key: str
    connector_id: str
    source_message_id: str
    source_channel_id: str
    source_guild_id: str
    target_channel_id: str
    target_guild_id: str | None = None
    event_type: str
    content: str = ""
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    source_created_at: datetime
    source_edited_at: datetime | None = None
    source_deleted_at: datetime | None = None
    status: str
    attempt_count: int
    max_attempts: int
    run_after: datetime
    claim_token: str | None = None
    last_error: str | None = None
    existing_mirrored_message_id: str | None = None
    existing_mirrored_guild_id: str | None = None


class RoleSyncJobOut(BaseModel):
    id: str
    user_id: str
    discord_user_id: str
    guild_id: str
    role_id: str
    action: str
    source: str | None = None
    status: str
    attempt_count: int
    max_attempts: int
    run_after: datetime
    claim_token: str | None = None
    last_error: str | None = None


class MirrorClaimResponse(BaseModel):
    jobs: list[MirrorJobOut] = Field(default_factory=list)


class RoleSyncClaimResponse(BaseModel):
    jobs: list[RoleSyncJobOut] = Field(default_factory=list)


class CompleteRequest(BaseModel):
    claim_token: str = Field(min_length=1)
    success: bool
    error: str | None = Field(default=None, max_length=2000)
    result_metadata: dict[str, Any] = Field(default_factory=dict)


class MirrorCompleteRequest(CompleteRequest):
    mirrored_message_id: str | None = None
    mirrored_guild_id: str | None = None


class CompleteResponse(BaseModel):
    ok: bool
    ignored: bool
    reason: str | None = None
    status: str | None = None


class QueueStatsOut(BaseModel):
    pending: int = 0
    pending_ready: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0


class QueueWakeOut(BaseModel):
    pending_ready: int = 0
    pending_total: int = 0
    next_run_after: datetime | None = None
    wake_updated_at: datetime | None = None


class QueueWakeResponse(BaseModel):
    server_now: datetime
    mirror: QueueWakeOut
    role_sync: QueueWakeOut
