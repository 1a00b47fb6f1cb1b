from typing import Literal

from pydantic import BaseModel, Field

SubscriptionStatus = Literal["active", "inactive", "canceled", "past_due"]


class SubscriptionSyncRequest(BaseModel):
    user_id: str = Field(min_length=1)
    subscription_status: SubscriptionStatus
    tier: str | None = None
    source: str = "manual"


class RoleSyncFanoutOut(BaseModel):
    mapping_source: Literal["tier_mappings", "legacy_env", "none"]
    mapped_tier: str | None = None
    granted: int = 0
    revoked: int = 0
    deduped: int = 0
    skipped: int = 0
