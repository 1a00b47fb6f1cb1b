from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from signal_relay.schemas.ingest import (
    CatalogSyncResult,
    ChannelRecord,
    GuildRecord,
    MessageBatchResult,
    ThreadEventResult,
    ThreadRecord,
)
from signal_relay.services.fanout import enqueue_mirror_jobs, resolve_mirror_targets
from signal_relay.services.queue import MirrorQueue
from signal_relay.services.repository import RepositorySession
from signal_relay.services.signals import (
    MergeOutcome,
    SignalFields,
    SignalValidationError,
    merge_signal,
    message_event_to_signal_fields,
)

logger = logging.getLogger(__name__)


class IngestService:
    def __init__(self, repository: Any, mirror_queue: MirrorQueue) -> None:
        self.repository = repository
        self.mirror_queue = mirror_queue

    async def apply_batch(
        self,
        *,
        tenant_key: str,
        connector_id: str,
        events: Sequence[dict[str, Any]],
        received_at: datetime,
    ) -> MessageBatchResult:
        """Merge a batch of message events in order and fan out mirror jobs.

        Each event is validated on its own; a malformed event is counted as
        rejected and the rest of the batch still applies.
        """
        result = MessageBatchResult()
        async with self.repository.session() as session:
            connector = await session.get_connector(tenant_key, connector_id)
            forward_enabled = bool(connector and connector.get("forward_enabled"))
            mappings = await session.list_channel_mappings(tenant_key, connector_id) if forward_enabled else []

            for index, raw_event in enumerate(events):
                try:
                    event, fields = message_event_to_signal_fields(
                        raw_event,
                        tenant_key=tenant_key,
                        connector_id=connector_id,
                        received_at=received_at,
                    )
                except SignalValidationError as exc:
                    result.rejected += 1
                    logger.warning(
                        "ingest event rejected tenant=%s connector=%s index=%s error=%s",
                        tenant_key,
                        connector_id,
                        index,
                        exc,
                    )
                    continue

                outcome = await self._apply_signal(session, fields, event.event_type, received_at)
                if outcome.action == "ignored":
                    result.ignored += 1
                    logger.info(
                        "ingest event ignored tenant=%s connector=%s message=%s reason=older_than_tombstone",
                        tenant_key,
                        connector_id,
                        fields.source_message_id,
                    )
                    continue

                if outcome.action == "inserted":
                    result.accepted += 1
                else:
                    result.deduped += 1
                if "attachments" in outcome.changes:
                    result.attachment_refs_persisted += len(outcome.changes["attachments"])
                if outcome.preserved_attachments:
                    logger.info(
                        "ingest kept stored attachments tenant=%s connector=%s message=%s",
                        tenant_key,
                        connector_id,
                        fields.source_message_id,
                    )

                if not forward_enabled:
                    continue
                fanout = await enqueue_mirror_jobs(
                    self.mirror_queue,
                    session,
                    tenant_key=tenant_key,
                    connector_id=connector_id,
                    source_message_id=fields.source_message_id,
                    source_channel_id=fields.source_channel_id,
                    source_guild_id=fields.source_guild_id,
                    event_type=event.event_type,
                    snapshot=outcome.snapshot,
                    targets=resolve_mirror_targets(mappings, fields.source_channel_id),
                    now=received_at,
                )
                result.mirror_enqueued += fanout.enqueued
                result.mirror_deduped += fanout.deduped
                result.mirror_skipped += fanout.skipped

        logger.info(
            "ingest batch applied tenant=%s connector=%s events=%s accepted=%s deduped=%s ignored=%s rejected=%s "
            "mirror_enqueued=%s",
            tenant_key,
            connector_id,
            len(events),
            result.accepted,
            result.deduped,
            result.ignored,
            result.rejected,
            result.mirror_enqueued,
        )
        return result

    async def sync_catalog(
        self,
        *,
        tenant_key: str,
        connector_id: str,
        guilds: Sequence[GuildRecord],
        channels: Sequence[ChannelRecord],
        received_at: datetime,
    ) -> CatalogSyncResult:
        result = CatalogSyncResult()
        async with self.repository.session() as session:
            for guild in guilds:
                await session.upsert_guild(
                    {
                        "tenant_key": tenant_key,
                        "connector_id": connector_id,
                        "guild_id": guild.guild_id,
                        "name": guild.name,
                        "updated_at": received_at,
                    }
                )
                result.guilds_upserted += 1
            for channel in channels:
                await session.upsert_channel(
                    {
                        "tenant_key": tenant_key,
                        "connector_id": connector_id,
                        "channel_id": channel.channel_id,
                        "guild_id": channel.guild_id,
                        "name": channel.name,
                        "type": channel.type,
                        "parent_id": channel.parent_id,
                        "position": channel.position,
                        "updated_at": received_at,
                    }
                )
                result.channels_upserted += 1

        logger.info(
            "catalog synced tenant=%s connector=%s guilds=%s channels=%s",
            tenant_key,
            connector_id,
            result.guilds_upserted,
            result.channels_upserted,
        )
        return result

    async def apply_thread_event(
        self,
        *,
        tenant_key: str,
        connector_id: str,
        event_type: str,
        thread: ThreadRecord,
        received_at: datetime,
    ) -> ThreadEventResult:
        async with self.repository.session() as session:
            created = await session.upsert_thread(
                {
                    "tenant_key": tenant_key,
                    "connector_id": connector_id,
                    "thread_id": thread.thread_id,
                    "parent_channel_id": thread.parent_channel_id,
                    "guild_id": thread.guild_id,
                    "name": thread.name,
                    "archived": bool(thread.archived),
                    "locked": bool(thread.locked),
                    "member_count": thread.member_count,
                    "message_count": thread.message_count,
                    "updated_at": received_at,
                    "deleted_at": received_at if event_type == "delete" else None,
                }
            )
        logger.info(
            "thread event applied tenant=%s connector=%s thread=%s event=%s created=%s",
            tenant_key,
            connector_id,
            thread.thread_id,
            event_type,
            created,
        )
        return ThreadEventResult(created=created)

    async def _apply_signal(
        self,
        session: RepositorySession,
        fields: SignalFields,
        event_type: str,
        received_at: datetime,
    ) -> MergeOutcome:
        existing = await session.get_signal(fields.tenant_key, fields.connector_id, fields.source_message_id)
        outcome = merge_signal(existing, fields, event_type=event_type, received_at=received_at)
        if outcome.action == "inserted":
            signal_id = await session.insert_signal(outcome.changes)
            if signal_id is not None:
                return outcome
            # Lost an insert race; merge onto the row the other writer created.
            existing = await session.get_signal(fields.tenant_key, fields.connector_id, fields.source_message_id)
            outcome = merge_signal(existing, fields, event_type=event_type, received_at=received_at)

        if outcome.action == "patched" and existing is not None:
            await session.update_signal(existing["id"], outcome.changes)
        return outcome

