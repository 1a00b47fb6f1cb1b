from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from signal_relay.schemas.ingest import ChannelRecord, GuildRecord, ThreadRecord
from signal_relay.services.ingest import IngestService
from signal_relay.services.queue import MirrorQueue
from signal_relay.services.store import InMemoryRepository

T = TypeVar("T")
T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


def _message(event_type: str = "create", **overrides: Any) -> dict[str, Any]:
    message: dict[str, Any] = {
        "event_type": event_type,
        "source_message_id": "m1",
        "source_channel_id": "c-1",
        "source_guild_id": "g-1",
        "content": "hello",
        "created_at": T0.isoformat(),
        "attachments": [],
    }
    message.update(overrides)
    return message


def _service(*, forward: bool = True, targets: tuple[str, ...] = ("target-1",)) -> tuple[IngestService, InMemoryRepository]:
    repository = InMemoryRepository()
    repository.add_connector("t1", "c1", forward_enabled=forward)
    for target in targets:
        repository.add_channel_mapping("t1", "c1", "c-1", target, "target-guild")
    return IngestService(repository, MirrorQueue(repository)), repository


def _apply(service: IngestService, events: list[dict[str, Any]], received_at: datetime = T0 + timedelta(minutes=1)):
    return _run(service.apply_batch(tenant_key="t1", connector_id="c1", events=events, received_at=received_at))


def test_batch_counts_and_sparse_attachment_updates() -> None:
    service, repository = _service(forward=False)
    attachment = {"url": "https://cdn.example.com/a.png", "name": "a.png"}

    first = _apply(service, [_message("create")])
    second = _apply(service, [_message("update", attachments=[attachment])])
    third = _apply(service, [_message("update", content="still here")])

    assert (first.accepted, first.deduped) == (1, 0)
    assert (second.accepted, second.deduped, second.attachment_refs_persisted) == (0, 1, 1)
    assert third.deduped == 1
    stored = repository.state.signals[("t1", "c1", "m1")]
    assert stored["attachments"] == [attachment]
    assert stored["content"] == "still here"


def test_malformed_event_is_rejected_without_blocking_the_batch() -> None:
    service, repository = _service(forward=False)

    result = _apply(
        service,
        [
            _message("create", source_message_id="m1"),
            _message("create", source_message_id="m2", created_at="garbage"),
            {"event_type": "create"},
            _message("create", source_message_id="m3"),
        ],
    )

    assert (result.accepted, result.rejected) == (2, 2)
    assert set(repository.state.signals) == {("t1", "c1", "m1"), ("t1", "c1", "m3")}


def test_stale_event_after_tombstone_counts_as_ignored_and_enqueues_nothing() -> None:
    service, repository = _service()
    _apply(service, [_message("delete", deleted_at=(T0 + timedelta(minutes=10)).isoformat())])

    result = _apply(service, [_message("update", content="late", edited_at=(T0 + timedelta(minutes=5)).isoformat())])

    assert (result.ignored, result.deduped, result.mirror_enqueued) == (1, 0, 0)
    jobs = repository.state.jobs["signal_mirror_jobs"].values()
    assert [job["event_type"] for job in jobs] == ["delete"]


def test_forwarding_enqueues_one_job_per_target_with_merged_snapshot() -> None:
    service, repository = _service(targets=("target-1", "target-2"))
    attachment = {"url": "https://cdn.example.com/a.png"}
    _apply(service, [_message("create", attachments=[attachment])])

    result = _apply(service, [_message("update", content="edited")], received_at=T0 + timedelta(minutes=2))

    assert result.mirror_enqueued == 2
    update_jobs = [
        job for job in repository.state.jobs["signal_mirror_jobs"].values() if job["event_type"] == "update"
    ]
    assert sorted(job["target_channel_id"] for job in update_jobs) == ["target-1", "target-2"]
    assert all(job["content"] == "edited" for job in update_jobs)
    # The event carried no attachments; the job snapshot still has the stored ones.
    assert all(job["attachments"] == [attachment] for job in update_jobs)
    assert all(job["source_edited_at"] == T0 + timedelta(minutes=2) for job in update_jobs)


def test_rapid_edits_coalesce_into_one_pending_mirror_job() -> None:
    service, repository = _service()
    _apply(service, [_message("create")])

    result = _apply(
        service,
        [_message("update", content="v2"), _message("update", content="v3")],
        received_at=T0 + timedelta(minutes=3),
    )

    assert (result.mirror_enqueued, result.mirror_deduped) == (1, 1)
    update_jobs = [
        job for job in repository.state.jobs["signal_mirror_jobs"].values() if job["event_type"] == "update"
    ]
    assert len(update_jobs) == 1
    assert update_jobs[0]["content"] == "v3"


def test_unrouted_channel_counts_as_mirror_skipped() -> None:
    service, _ = _service(targets=())
    result = _apply(service, [_message("create")])
    assert (result.accepted, result.mirror_skipped, result.mirror_enqueued) == (1, 1, 0)


def test_disabled_forwarding_neither_enqueues_nor_skips() -> None:
    service, repository = _service(forward=False)
    result = _apply(service, [_message("create")])

    assert (result.mirror_enqueued, result.mirror_skipped) == (0, 0)
    assert repository.state.jobs == {}


def test_catalog_sync_keeps_optional_channel_fields_when_absent() -> None:
    service, repository = _service(forward=False)
    _run(
        service.sync_catalog(
            tenant_key="t1",
            connector_id="c1",
            guilds=[GuildRecord(guild_id="g-1", name="Guild")],
            channels=[ChannelRecord(channel_id="c-1", guild_id="g-1", name="general", type=0, position=3)],
            received_at=T0,
        )
    )
    result = _run(
        service.sync_catalog(
            tenant_key="t1",
            connector_id="c1",
            guilds=[],
            channels=[ChannelRecord(channel_id="c-1", guild_id="g-1", name="renamed")],
            received_at=T0 + timedelta(minutes=1),
        )
    )

    assert (result.guilds_upserted, result.channels_upserted) == (0, 1)
    channel = repository.state.channels[("t1", "c1", "c-1")]
    assert channel["name"] == "renamed"
    assert channel["position"] == 3
    assert channel["type"] == 0
    assert repository.state.guilds[("t1", "c1", "g-1")]["name"] == "Guild"


def test_thread_events_report_creation_and_tombstone_on_delete() -> None:
    service, repository = _service(forward=False)
    thread = ThreadRecord(thread_id="th-1", parent_channel_id="c-1", guild_id="g-1", name="Thread")

    created = _run(
        service.apply_thread_event(tenant_key="t1", connector_id="c1", event_type="create", thread=thread, received_at=T0)
    )
    deleted_at = T0 + timedelta(minutes=1)
    deleted = _run(
        service.apply_thread_event(
            tenant_key="t1", connector_id="c1", event_type="delete", thread=thread, received_at=deleted_at
        )
    )

    assert created.created is True
    assert deleted.created is False
    assert repository.state.threads[("t1", "c1", "th-1")]["deleted_at"] == deleted_at


def test_null_fields_and_bad_attachment_entries_do_not_reject_the_event() -> None:
    service, repository = _service(forward=False)
    good = {"url": "https://cdn.example.com/a.png"}

    result = _apply(
        service,
        [
            _message("create", source_message_id="m1", content=None, attachments=None),
            _message("create", source_message_id="m2", attachments=["https://cdn.example.com/bare.png", good]),
        ],
    )

    assert (result.accepted, result.rejected) == (2, 0)
    assert result.attachment_refs_persisted == 1
    assert repository.state.signals[("t1", "c1", "m1")]["content"] == ""
    assert repository.state.signals[("t1", "c1", "m1")]["attachments"] == []
    assert repository.state.signals[("t1", "c1", "m2")]["attachments"] == [good]
