from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status

from signal_relay.api.deps import get_ingest_service
from signal_relay.core.security import get_internal_principal
from signal_relay.schemas.ingest import (
    CatalogSyncRequest,
    CatalogSyncResult,
    MessageBatchRequest,
    MessageBatchResult,
    ThreadEventRequest,
    ThreadEventResult,
)
from signal_relay.services.ingest import IngestService
from signal_relay.services.repository import RepositoryConflictError, RepositoryUnavailableError

router = APIRouter()


@router.post("/messages", response_model=MessageBatchResult)
async def ingest_messages(
    payload: MessageBatchRequest,
    _principal=Depends(get_internal_principal),
    service: IngestService = Depends(get_ingest_service),
) -> MessageBatchResult:
    try:
        return await service.apply_batch(
            tenant_key=payload.tenant_key,
            connector_id=payload.connector_id,
            events=payload.messages,
            received_at=_received_at(payload.received_at),
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.post("/catalog", response_model=CatalogSyncResult)
async def ingest_catalog(
    payload: CatalogSyncRequest,
    _principal=Depends(get_internal_principal),
    service: IngestService = Depends(get_ingest_service),
) -> CatalogSyncResult:
    try:
        return await service.sync_catalog(
            tenant_key=payload.tenant_key,
            connector_id=payload.connector_id,
            guilds=payload.guilds,
            channels=payload.channels,
            received_at=_received_at(payload.received_at),
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post("/threads", response_model=ThreadEventResult)
async def ingest_thread_event(
    payload: ThreadEventRequest,
    _principal=Depends(get_internal_principal),
    service: IngestService = Depends(get_ingest_service),
) -> ThreadEventResult:
    try:
        return await service.apply_thread_event(
            tenant_key=payload.tenant_key,
            connector_id=payload.connector_id,
            event_type=payload.event_type,
            thread=payload.thread,
            received_at=_received_at(payload.received_at),
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


def _received_at(value: datetime | None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
