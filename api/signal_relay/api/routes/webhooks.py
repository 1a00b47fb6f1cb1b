import hashlib
import json
from datetime import datetime, timezone
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from signal_relay.api.deps import get_webhook_ledger
from signal_relay.core.security import get_internal_principal
from signal_relay.schemas.webhooks import (
    WebhookEventIn,
    WebhookEventOut,
    WebhookProcessOut,
    WebhookProcessRequest,
    WebhookRecordOut,
)
from signal_relay.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)
from signal_relay.services.webhooks import SubscriptionTransition, WebhookLedger

router = APIRouter()

ProviderPath = Annotated[str, Path(min_length=1, max_length=64, pattern=r"^[a-z0-9_-]+$")]


@router.post("/{provider}/events", response_model=WebhookRecordOut)
async def record_webhook_event(
    provider: ProviderPath,
    payload: WebhookEventIn,
    _principal=Depends(get_internal_principal),
    ledger: WebhookLedger = Depends(get_webhook_ledger),
) -> WebhookRecordOut:
    received_at = payload.received_at or datetime.now(timezone.utc)
    try:
        result = await ledger.record(
            provider=provider,
            event_id=payload.event_id,
            event_type=payload.event_type,
            payload=payload.payload,
            payload_hash=payload.payload_hash or _payload_hash(payload.payload),
            received_at=received_at,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return WebhookRecordOut(**result.to_dict())


@router.post("/{provider}/events/{event_id}/process", response_model=WebhookProcessOut)
async def process_webhook_event(
    provider: ProviderPath,
    event_id: str,
    payload: WebhookProcessRequest,
    _principal=Depends(get_internal_principal),
    ledger: WebhookLedger = Depends(get_webhook_ledger),
) -> WebhookProcessOut:
    try:
        result = await ledger.process(
            provider=provider,
            event_id=event_id,
            transition=SubscriptionTransition(
                user_id=payload.user_id,
                subscription_status=payload.subscription_status,
                tier=payload.tier,
            ),
            attempted_at=datetime.now(timezone.utc),
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    body = result.to_dict()
    body["role_sync"] = body["role_sync"] or None
    return WebhookProcessOut(**body)


@router.get("/{provider}/events/failed", response_model=list[WebhookEventOut])
async def list_failed_webhook_events(
    provider: ProviderPath,
    _principal=Depends(get_internal_principal),
    ledger: WebhookLedger = Depends(get_webhook_ledger),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[WebhookEventOut]:
    try:
        rows = await ledger.list_failed(provider=provider, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [WebhookEventOut(**row) for row in rows]


def _payload_hash(payload: dict[str, Any]) -> str:
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()
