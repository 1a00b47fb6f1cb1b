from fastapi import Depends

from signal_relay.core.config import Settings, get_settings
from signal_relay.services.fanout import RoleTarget, legacy_role_target
from signal_relay.services.ingest import IngestService
from signal_relay.services.queue import MirrorQueue, RoleSyncQueue, queue_options
from signal_relay.services.repository import get_repository
from signal_relay.services.webhooks import WebhookLedger


def get_mirror_queue(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> MirrorQueue:
    return MirrorQueue(repository, **queue_options(settings))


def get_role_sync_queue(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> RoleSyncQueue:
    return RoleSyncQueue(repository, **queue_options(settings))


def get_legacy_role_target(settings: Settings = Depends(get_settings)) -> RoleTarget | None:
    return legacy_role_target(settings.legacy_role_guild_id, settings.legacy_role_role_id)


def get_ingest_service(
    repository=Depends(get_repository),
    mirror_queue: MirrorQueue = Depends(get_mirror_queue),
) -> IngestService:
    return IngestService(repository, mirror_queue)


def get_webhook_ledger(
    repository=Depends(get_repository),
    role_sync_queue: RoleSyncQueue = Depends(get_role_sync_queue),
    legacy_target: RoleTarget | None = Depends(get_legacy_role_target),
) -> WebhookLedger:
    return WebhookLedger(repository, role_sync_queue, legacy_target)
