from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status

from signal_relay.api.deps import get_legacy_role_target, get_role_sync_queue
from signal_relay.core.security import get_internal_principal, get_role_sync_worker_principal
from signal_relay.schemas.jobs import (
    ClaimRequest,
    CompleteRequest,
    CompleteResponse,
    QueueStatsOut,
    RoleSyncClaimResponse,
    RoleSyncJobOut,
)
from signal_relay.schemas.role_sync import RoleSyncFanoutOut, SubscriptionSyncRequest
from signal_relay.services.fanout import RoleTarget, fan_out_for_user
from signal_relay.services.queue import RoleSyncQueue
from signal_relay.services.repository import (
    RepositoryConflictError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

router = APIRouter()


@router.post("/jobs/claim", response_model=RoleSyncClaimResponse)
async def claim_role_sync_jobs(
    payload: ClaimRequest,
    _principal=Depends(get_role_sync_worker_principal),
    queue: RoleSyncQueue = Depends(get_role_sync_queue),
) -> RoleSyncClaimResponse:
    try:
        jobs = await queue.claim(limit=payload.limit, worker_id=payload.worker_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return RoleSyncClaimResponse(jobs=[RoleSyncJobOut(**job) for job in jobs])


@router.post("/jobs/{job_id}/complete", response_model=CompleteResponse)
async def complete_role_sync_job(
    job_id: str,
    payload: CompleteRequest,
    _principal=Depends(get_role_sync_worker_principal),
    queue: RoleSyncQueue = Depends(get_role_sync_queue),
) -> CompleteResponse:
    try:
        result = await queue.complete(
            job_id=job_id,
            claim_token=payload.claim_token,
            success=payload.success,
            error=payload.error,
            result_metadata=payload.result_metadata,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return CompleteResponse(**result.to_dict())


@router.get("/stats", response_model=QueueStatsOut)
async def role_sync_stats(
    _principal=Depends(get_role_sync_worker_principal),
    queue: RoleSyncQueue = Depends(get_role_sync_queue),
    user_id: str | None = Query(default=None, min_length=1),
) -> QueueStatsOut:
    try:
        counts = await queue.stats(filters={"user_id": user_id})
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return QueueStatsOut(**counts)


@router.get("/jobs", response_model=list[RoleSyncJobOut])
async def list_role_sync_jobs(
    _principal=Depends(get_internal_principal),
    queue: RoleSyncQueue = Depends(get_role_sync_queue),
    user_id: str | None = Query(default=None, min_length=1),
    discord_user_id: str | None = Query(default=None, min_length=1),
    job_status: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[RoleSyncJobOut]:
    try:
        rows = await queue.list_jobs(
            filters={"user_id": user_id, "discord_user_id": discord_user_id},
            status=job_status,
            limit=limit,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [RoleSyncJobOut(**{**row, "claim_token": None}) for row in rows]


@router.post("/subscriptions", response_model=RoleSyncFanoutOut)
async def sync_subscription(
    payload: SubscriptionSyncRequest,
    _principal=Depends(get_internal_principal),
    queue: RoleSyncQueue = Depends(get_role_sync_queue),
    legacy_target: RoleTarget | None = Depends(get_legacy_role_target),
) -> RoleSyncFanoutOut:
    try:
        async with queue.repository.session() as session:
            result = await fan_out_for_user(
                queue,
                session,
                user_id=payload.user_id,
                subscription_status=payload.subscription_status,
                tier=payload.tier,
                source=payload.source,
                now=datetime.now(timezone.utc),
                legacy_target=legacy_target,
            )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return RoleSyncFanoutOut(**result.to_dict())
