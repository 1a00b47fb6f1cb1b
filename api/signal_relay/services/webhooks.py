from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from signal_relay.services.fanout import RoleTarget, fan_out_for_user
from signal_relay.services.queue import RoleSyncQueue
from signal_relay.services.repository import RepositoryNotFoundError

logger = logging.getLogger(__name__)

MAX_FAILED_EVENTS_LIMIT = 200


@dataclass(slots=True)
class SubscriptionTransition:
    """A subscription change already projected from a provider payload."""

    user_id: str | None
    subscription_status: str
    tier: str | None = None


@dataclass(slots=True)
class RecordResult:
    created: bool
    status: str
    attempt_count: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ProcessResult:
    ok: bool
    deduped: bool = False
    status: str | None = None
    error: str | None = None
    role_sync: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class WebhookLedger:
    """At-most-once processing record for inbound payment webhook events."""

    def __init__(self, repository: Any, role_sync_queue: RoleSyncQueue, legacy_target: RoleTarget | None = None) -> None:
        self.repository = repository
        self.role_sync_queue = role_sync_queue
        self.legacy_target = legacy_target

    async def record(
        self,
        *,
        provider: str,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        payload_hash: str | None,
        received_at: datetime,
    ) -> RecordResult:
        async with self.repository.session() as session:
            created = await session.insert_webhook_event(
                {
                    "provider": provider,
                    "event_id": event_id,
                    "event_type": event_type,
                    "payload": payload,
                    "payload_hash": payload_hash,
                    "status": "received",
                    "attempt_count": 0,
                    "received_at": received_at,
                }
            )
            event = await session.get_webhook_event(provider, event_id)

        if event is None:
            raise RepositoryNotFoundError(f"webhook event vanished provider={provider} event_id={event_id}")

        if created:
            logger.info("webhook event recorded provider=%s event_id=%s type=%s", provider, event_id, event_type)
        else:
            stored_hash = event.get("payload_hash")
            if payload_hash and stored_hash and stored_hash != payload_hash:
                logger.warning(
                    "webhook event duplicate with different payload provider=%s event_id=%s",
                    provider,
                    event_id,
                )
            else:
                logger.info("webhook event duplicate provider=%s event_id=%s status=%s", provider, event_id, event["status"])

        return RecordResult(
            created=created,
            status=event["status"],
            attempt_count=int(event.get("attempt_count") or 0),
        )

    async def process(
        self,
        *,
        provider: str,
        event_id: str,
        transition: SubscriptionTransition,
        attempted_at: datetime,
    ) -> ProcessResult:
        async with self.repository.session() as session:
            event = await session.get_webhook_event(provider, event_id)
            if event is None:
                return ProcessResult(ok=False, error="webhook_event_not_found")
            if event["status"] == "processed":
                return ProcessResult(ok=True, deduped=True, status="processed")

            attempt_count = int(event.get("attempt_count") or 0) + 1
            user_id = (transition.user_id or "").strip() or None
            tier = (transition.tier or "").strip() or None
            error: str | None = None
            if user_id is None:
                error = "user_not_found"
            elif transition.subscription_status == "active" and tier is None:
                error = "tier_missing"

            if error is not None:
                await session.update_webhook_event(
                    provider,
                    event_id,
                    {
                        "status": "failed",
                        "attempt_count": attempt_count,
                        "last_attempt_at": attempted_at,
                        "error": error,
                    },
                )
                failure = ProcessResult(ok=False, status="failed", error=error)
            else:
                fanout = await fan_out_for_user(
                    self.role_sync_queue,
                    session,
                    user_id=user_id,
                    subscription_status=transition.subscription_status,
                    tier=tier,
                    source=f"{provider}_webhook",
                    now=attempted_at,
                    legacy_target=self.legacy_target,
                )
                await session.update_webhook_event(
                    provider,
                    event_id,
                    {
                        "status": "processed",
                        "attempt_count": attempt_count,
                        "last_attempt_at": attempted_at,
                        "processed_at": attempted_at,
                        "resolved_user_id": user_id,
                        "subscription_status": transition.subscription_status,
                        "tier": tier,
                        "error": None,
                    },
                )
                failure = None

        if failure is not None:
            logger.warning(
                "webhook event failed provider=%s event_id=%s attempt=%s error=%s",
                provider,
                event_id,
                attempt_count,
                failure.error,
            )
            return failure

        logger.info(
            "webhook event processed provider=%s event_id=%s user_id=%s status=%s granted=%s revoked=%s",
            provider,
            event_id,
            user_id,
            transition.subscription_status,
            fanout.granted,
            fanout.revoked,
        )
        return ProcessResult(ok=True, status="processed", role_sync=fanout.to_dict())

    async def list_failed(self, *, provider: str, limit: int = 50) -> list[dict[str, Any]]:
        bounded_limit = max(1, min(limit, MAX_FAILED_EVENTS_LIMIT))
        async with self.repository.session() as session:
            return await session.list_webhook_events(provider, status="failed", limit=bounded_limit)
