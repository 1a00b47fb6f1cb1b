from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status

from signal_relay.api.deps import get_mirror_queue, get_role_sync_queue
from signal_relay.core.security import get_any_worker_principal
from signal_relay.schemas.jobs import QueueWakeOut, QueueWakeResponse
from signal_relay.services.queue import MirrorQueue, RoleSyncQueue
from signal_relay.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.get("/wake", response_model=QueueWakeResponse)
async def queue_wake_state(
    _principal=Depends(get_any_worker_principal),
    mirror_queue: MirrorQueue = Depends(get_mirror_queue),
    role_sync_queue: RoleSyncQueue = Depends(get_role_sync_queue),
) -> QueueWakeResponse:
    now = datetime.now(timezone.utc)
    try:
        mirror_state = await mirror_queue.wake_state(now)
        role_sync_state = await role_sync_queue.wake_state(now)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return QueueWakeResponse(
        server_now=now,
        mirror=QueueWakeOut(**mirror_state),
        role_sync=QueueWakeOut(**role_sync_state),
    )
