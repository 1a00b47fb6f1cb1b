from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

SignalEventType = Literal["create", "update", "delete"]
ThreadEventType = Literal["create", "update", "delete", "members_update"]


class MessageEvent(BaseModel):
    idempotency_key: str | None = None
    event_type: SignalEventType
    source_message_id: str = Field(min_length=1)
    source_channel_id: str
    source_guild_id: str
    source_thread_id: str | None = None
    content: str | None = None
    created_at: str
    edited_at: str | None = None
    deleted_at: str | None = None
    # Attachment entries are sanitized (not validated) so one bad ref never rejects the event.
    attachments: list[Any] | None = None


class MessageBatchRequest(BaseModel):
    tenant_key: str = Field(min_length=1)
    connector_id: str = Field(min_length=1)
    received_at: datetime | None = None
    # Raw dicts: each event is validated on its own and rejected individually.
    messages: list[dict[str, Any]] = Field(default_factory=list)


class MessageBatchResult(BaseModel):
    accepted: int = 0
    deduped: int = 0
    ignored: int = 0
    rejected: int = 0
    attachment_refs_persisted: int = 0
    mirror_enqueued: int = 0
    mirror_deduped: int = 0
    mirror_skipped: int = 0


class GuildRecord(BaseModel):
    guild_id: str = Field(min_length=1)
    name: str


class ChannelRecord(BaseModel):
    channel_id: str = Field(min_length=1)
    guild_id: str
    name: str
    type: int | None = None
    parent_id: str | None = None
    position: int | None = None


class CatalogSyncRequest(BaseModel):
    tenant_key: str = Field(min_length=1)
    connector_id: str = Field(min_length=1)
    received_at: datetime | None = None
    guilds: list[GuildRecord] = Field(default_factory=list)
    channels: list[ChannelRecord] = Field(default_factory=list)


class CatalogSyncResult(BaseModel):
    ok: bool = True
    guilds_upserted: int = 0
    channels_upserted: int = 0


class ThreadRecord(BaseModel):
    thread_id: str = Field(min_length=1)
    parent_channel_id: str
    guild_id: str
    name: str
    archived: bool | None = None
    locked: bool | None = None
    member_count: int | None = None
    message_count: int | None = None


class ThreadEventRequest(BaseModel):
    tenant_key: str = Field(min_length=1)
    connector_id: str = Field(min_length=1)
    received_at: datetime | None = None
    idempotency_key: str | None = None
    event_type: ThreadEventType
    thread: ThreadRecord


class ThreadEventResult(BaseModel):
    ok: bool = True
    created: bool
