from fastapi import APIRouter, Depends, HTTPException, Query, status

from signal_relay.api.deps import get_mirror_queue
from signal_relay.core.security import get_internal_principal, get_mirror_worker_principal
from signal_relay.schemas.jobs import (
    ClaimRequest,
    CompleteResponse,
    MirrorClaimResponse,
    MirrorCompleteRequest,
    MirrorJobOut,
    QueueStatsOut,
)
from signal_relay.services.queue import MirrorQueue
from signal_relay.services.repository import RepositoryUnavailableError, RepositoryValidationError

router = APIRouter()


@router.post("/jobs/claim", response_model=MirrorClaimResponse)
async def claim_mirror_jobs(
    payload: ClaimRequest,
    _principal=Depends(get_mirror_worker_principal),
    queue: MirrorQueue = Depends(get_mirror_queue),
) -> MirrorClaimResponse:
    try:
        jobs = await queue.claim(limit=payload.limit, worker_id=payload.worker_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return MirrorClaimResponse(jobs=[MirrorJobOut(**job) for job in jobs])


@router.post("/jobs/{job_id}/complete", response_model=CompleteResponse)
async def complete_mirror_job(
    job_id: str,
    payload: MirrorCompleteRequest,
    _principal=Depends(get_mirror_worker_principal),
    queue: MirrorQueue = Depends(get_mirror_queue),
) -> CompleteResponse:
    metadata = dict(payload.result_metadata)
    if payload.mirrored_message_id is not None:
        metadata["mirrored_message_id"] = payload.mirrored_message_id
    if payload.mirrored_guild_id is not None:
        metadata["mirrored_guild_id"] = payload.mirrored_guild_id

    try:
        result = await queue.complete(
            job_id=job_id,
            claim_token=payload.claim_token,
            success=payload.success,
            error=payload.error,
            result_metadata=metadata,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return CompleteResponse(**result.to_dict())


@router.get("/stats", response_model=QueueStatsOut)
async def mirror_stats(
    _principal=Depends(get_mirror_worker_principal),
    queue: MirrorQueue = Depends(get_mirror_queue),
    tenant_key: str | None = Query(default=None, min_length=1),
    connector_id: str | None = Query(default=None, min_length=1),
) -> QueueStatsOut:
    try:
        counts = await queue.stats(filters={"tenant_key": tenant_key, "connector_id": connector_id})
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return QueueStatsOut(**counts)


@router.get("/jobs", response_model=list[MirrorJobOut])
async def list_mirror_jobs(
    _principal=Depends(get_internal_principal),
    queue: MirrorQueue = Depends(get_mirror_queue),
    tenant_key: str | None = Query(default=None, min_length=1),
    connector_id: str | None = Query(default=None, min_length=1),
    job_status: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[MirrorJobOut]:
    try:
        rows = await queue.list_jobs(
            filters={"tenant_key": tenant_key, "connector_id": connector_id},
            status=job_status,
            limit=limit,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [MirrorJobOut(**{**row, "claim_token": None}) for row in rows]
