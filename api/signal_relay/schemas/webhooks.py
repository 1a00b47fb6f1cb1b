from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from signal_relay.schemas.role_sync import RoleSyncFanoutOut, SubscriptionStatus


class WebhookEventIn(BaseModel):
    event_id: str = Field(min_length=1, max_length=300)
    event_type: str = Field(min_length=1, max_length=200)
    payload: dict[str, Any] = Field(default_factory=dict)
    payload_hash: str | None = None
    received_at: datetime | None = None


class WebhookRecordOut(BaseModel):
    created: bool
    status: str
    attempt_count: int


class WebhookProcessRequest(BaseModel):
    user_id: str | None = None
    subscription_status: SubscriptionStatus
    tier: str | None = None


class WebhookProcessOut(BaseModel):
    ok: bool
    deduped: bool = False
    status: str | None = None
    error: str | None = None
    role_sync: RoleSyncFanoutOut | None = None


class WebhookEventOut(BaseModel):
    provider: str
    event_id: str
    event_type: str
    status: str
    attempt_count: int
    payload_hash: str | None = None
    resolved_user_id: str | None = None
    subscription_status: str | None = None
    tier: str | None = None
    received_at: datetime
    last_attempt_at: datetime | None = None
    processed_at: datetime | None = None
    error: str | None = None
