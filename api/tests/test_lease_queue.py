from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

import pytest

from signal_relay.services.queue import (
    MirrorQueue,
    RoleSyncQueue,
    clamp_claim_limit,
    compute_retry_delay_seconds,
)
from signal_relay.services.repository import RepositoryValidationError
from signal_relay.services.store import InMemoryRepository

T = TypeVar("T")
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


def _role_key(action: str = "grant", role_id: str = "role-gold") -> dict[str, str]:
    return {
        "user_id": "user-1",
        "discord_user_id": "discord-1",
        "guild_id": "guild-1",
        "role_id": role_id,
        "action": action,
    }


def _mirror_key(target_channel_id: str = "target-1", event_type: str = "create") -> dict[str, str]:
    return {
        "tenant_key": "tenant-a",
        "connector_id": "conn-1",
        "source_message_id": "m-1",
        "target_channel_id": target_channel_id,
        "event_type": event_type,
    }


def _mirror_payload(content: str = "hello") -> dict[str, Any]:
    return {
        "source_channel_id": "c-1",
        "source_guild_id": "g-1",
        "target_guild_id": "target-guild",
        "content": content,
        "attachments": [],
        "source_created_at": NOW,
        "source_edited_at": None,
        "source_deleted_at": None,
    }


async def _enqueue(queue, key: dict[str, Any], payload: dict[str, Any], now: datetime = NOW):
    async with queue.repository.session() as session:
        return await queue.enqueue(session, dedupe_key=key, payload=payload, now=now)


def test_retry_delay_doubles_from_base_and_caps() -> None:
    assert [compute_retry_delay_seconds(attempt) for attempt in (1, 2, 3, 4)] == [5, 10, 20, 40]
    assert compute_retry_delay_seconds(8) == 640
    assert compute_retry_delay_seconds(9) == 900
    assert compute_retry_delay_seconds(30) == 900


def test_claim_limit_is_clamped() -> None:
    assert clamp_claim_limit(None) == 5
    assert clamp_claim_limit(0) == 1
    assert clamp_claim_limit(-3) == 1
    assert clamp_claim_limit(7) == 7
    assert clamp_claim_limit(500) == 20


def test_enqueue_coalesces_pending_jobs_and_latest_payload_wins() -> None:
    repository = InMemoryRepository()
    queue = MirrorQueue(repository)

    first = _run(_enqueue(queue, _mirror_key(), _mirror_payload("v1")))
    second = _run(_enqueue(queue, _mirror_key(), _mirror_payload("v2"), NOW + timedelta(seconds=3)))

    assert first.enqueued and not first.deduped
    assert second.enqueued and second.deduped
    assert second.job_id == first.job_id

    jobs = _run(queue.list_jobs())
    assert len(jobs) == 1
    assert jobs[0]["content"] == "v2"
    assert jobs[0]["run_after"] == NOW


def test_enqueue_pulls_delayed_pending_job_forward() -> None:
    repository = InMemoryRepository()
    queue = RoleSyncQueue(repository)
    _run(_enqueue(queue, _role_key(), {"source": "test"}))

    claimed = _run(queue.claim(limit=1, worker_id="w-1", now=NOW))
    _run(queue.complete(job_id=claimed[0]["id"], claim_token=claimed[0]["claim_token"], success=False, now=NOW))
    retrying = _run(queue.list_jobs())[0]
    assert retrying["run_after"] == NOW + timedelta(seconds=5)

    later = NOW + timedelta(seconds=1)
    result = _run(_enqueue(queue, _role_key(), {"source": "again"}, later))

    assert result.deduped
    job = _run(queue.list_jobs())[0]
    assert job["run_after"] == later
    assert job["source"] == "again"


def test_enqueue_skips_blank_dedupe_components() -> None:
    queue = RoleSyncQueue(InMemoryRepository())
    result = _run(_enqueue(queue, {**_role_key(), "discord_user_id": "  "}, {"source": "test"}))

    assert result.enqueued is False
    assert result.reason == "missing_discord_user_id"
    assert _run(queue.list_jobs()) == []


def test_claim_returns_oldest_ready_jobs_with_fresh_tokens() -> None:
    repository = InMemoryRepository()
    queue = MirrorQueue(repository)
    _run(_enqueue(queue, _mirror_key("target-2"), _mirror_payload(), NOW + timedelta(seconds=1)))
    _run(_enqueue(queue, _mirror_key("target-1"), _mirror_payload(), NOW))
    _run(_enqueue(queue, _mirror_key("target-3"), _mirror_payload(), NOW + timedelta(minutes=5)))

    claimed = _run(queue.claim(limit=5, worker_id="w-1", now=NOW + timedelta(seconds=2)))

    assert [job["target_channel_id"] for job in claimed] == ["target-1", "target-2"]
    assert all(job["status"] == "processing" for job in claimed)
    assert all(job["attempt_count"] == 1 for job in claimed)
    assert len({job["claim_token"] for job in claimed}) == 2
    assert claimed[0]["existing_mirrored_message_id"] is None


def test_claimed_job_is_not_claimed_twice() -> None:
    queue = RoleSyncQueue(InMemoryRepository())
    _run(_enqueue(queue, _role_key(), {"source": "test"}))

    async def claim_concurrently() -> list[list[dict[str, Any]]]:
        return list(
            await asyncio.gather(
                queue.claim(limit=5, worker_id="w-1", now=NOW),
                queue.claim(limit=5, worker_id="w-2", now=NOW),
            )
        )

    first, second = _run(claim_concurrently())
    assert len(first) + len(second) == 1


def test_failure_backoff_progression_and_terminal_failure() -> None:
    queue = RoleSyncQueue(InMemoryRepository(), max_attempts=3)
    _run(_enqueue(queue, _role_key(), {"source": "test"}))

    now = NOW
    deltas: list[timedelta] = []
    for _ in range(2):
        job = _run(queue.claim(limit=1, worker_id="w-1", now=now))[0]
        result = _run(queue.complete(job_id=job["id"], claim_token=job["claim_token"], success=False, error="boom", now=now))
        assert result.status == "pending"
        stored = _run(queue.list_jobs())[0]
        assert stored["last_error"] == "boom"
        assert stored["claim_token"] is None
        deltas.append(stored["run_after"] - now)
        now = stored["run_after"]

    assert deltas == [timedelta(seconds=5), timedelta(seconds=10)]

    job = _run(queue.claim(limit=1, worker_id="w-1", now=now))[0]
    assert job["attempt_count"] == 3
    result = _run(queue.complete(job_id=job["id"], claim_token=job["claim_token"], success=False, now=now))

    assert result.status == "failed"
    stored = _run(queue.list_jobs())[0]
    assert stored["status"] == "failed"
    assert stored["last_error"] == "unknown_error"
    assert _run(queue.claim(limit=5, worker_id="w-1", now=now + timedelta(days=1))) == []


def test_completion_guards_report_ignored_reasons() -> None:
    queue = RoleSyncQueue(InMemoryRepository())
    _run(_enqueue(queue, _role_key(), {"source": "test"}))
    job = _run(queue.claim(limit=1, worker_id="w-1", now=NOW))[0]

    missing = _run(queue.complete(job_id="00000000-0000-0000-0000-000000000000", claim_token="x", success=True))
    mismatch = _run(queue.complete(job_id=job["id"], claim_token="wrong", success=True))
    done = _run(queue.complete(job_id=job["id"], claim_token=job["claim_token"], success=True))
    again = _run(queue.complete(job_id=job["id"], claim_token=job["claim_token"], success=True))

    assert missing.to_dict() == {"ok": False, "ignored": True, "reason": "job_not_found", "status": None}
    assert mismatch.reason == "claim_token_mismatch"
    assert done.to_dict() == {"ok": True, "ignored": False, "reason": None, "status": "completed"}
    assert again.reason == "job_not_processing"


def test_completed_job_allows_a_new_job_for_the_same_key() -> None:
    queue = RoleSyncQueue(InMemoryRepository())
    first = _run(_enqueue(queue, _role_key(), {"source": "test"}))
    job = _run(queue.claim(limit=1, worker_id="w-1", now=NOW))[0]
    _run(queue.complete(job_id=job["id"], claim_token=job["claim_token"], success=True, now=NOW))

    second = _run(_enqueue(queue, _role_key(), {"source": "test"}, NOW + timedelta(seconds=1)))

    assert second.deduped is False
    assert second.job_id != first.job_id


def test_enqueue_while_processing_dedupes_onto_claimed_job() -> None:
    queue = MirrorQueue(InMemoryRepository())
    _run(_enqueue(queue, _mirror_key(), _mirror_payload("v1")))
    claimed = _run(queue.claim(limit=1, worker_id="w-1", now=NOW))[0]

    result = _run(_enqueue(queue, _mirror_key(), _mirror_payload("v2"), NOW + timedelta(seconds=1)))

    assert result.deduped is True
    assert result.job_id == claimed["id"]
    stored = _run(queue.list_jobs())[0]
    assert stored["status"] == "processing"
    assert stored["content"] == "v2"


def test_mirror_success_records_mirrored_signal_and_next_claim_sees_it() -> None:
    repository = InMemoryRepository()
    queue = MirrorQueue(repository)
    _run(_enqueue(queue, _mirror_key(), _mirror_payload()))
    job = _run(queue.claim(limit=1, worker_id="w-1", now=NOW))[0]
    _run(
        queue.complete(
            job_id=job["id"],
            claim_token=job["claim_token"],
            success=True,
            result_metadata={"mirrored_message_id": "mirror-77", "mirrored_guild_id": "guild-9"},
            now=NOW,
        )
    )

    _run(_enqueue(queue, _mirror_key(event_type="update"), _mirror_payload("edited"), NOW + timedelta(seconds=1)))
    update_job = _run(queue.claim(limit=1, worker_id="w-1", now=NOW + timedelta(seconds=2)))[0]

    assert update_job["existing_mirrored_message_id"] == "mirror-77"
    assert update_job["existing_mirrored_guild_id"] == "guild-9"
    mirrored = repository.state.mirrored_signals[("tenant-a", "conn-1", "m-1", "target-1")]
    assert mirrored["deleted_at"] is None


def test_mirror_delete_success_keeps_ids_and_sets_deleted_at() -> None:
    repository = InMemoryRepository()
    queue = MirrorQueue(repository)
    _run(_enqueue(queue, _mirror_key(), _mirror_payload()))
    job = _run(queue.claim(limit=1, worker_id="w-1", now=NOW))[0]
    _run(
        queue.complete(
            job_id=job["id"],
            claim_token=job["claim_token"],
            success=True,
            result_metadata={"mirrored_message_id": "mirror-77"},
            now=NOW,
        )
    )

    deleted_at = NOW + timedelta(minutes=1)
    _run(_enqueue(queue, _mirror_key(event_type="delete"), _mirror_payload(), deleted_at))
    delete_job = _run(queue.claim(limit=1, worker_id="w-1", now=deleted_at))[0]
    _run(queue.complete(job_id=delete_job["id"], claim_token=delete_job["claim_token"], success=True, now=deleted_at))

    mirrored = repository.state.mirrored_signals[("tenant-a", "conn-1", "m-1", "target-1")]
    assert mirrored["mirrored_message_id"] == "mirror-77"
    assert mirrored["deleted_at"] == deleted_at


def test_mirror_success_without_message_id_creates_no_mapping() -> None:
    repository = InMemoryRepository()
    queue = MirrorQueue(repository)
    _run(_enqueue(queue, _mirror_key(), _mirror_payload()))
    job = _run(queue.claim(limit=1, worker_id="w-1", now=NOW))[0]
    _run(queue.complete(job_id=job["id"], claim_token=job["claim_token"], success=True, now=NOW))

    assert repository.state.mirrored_signals == {}


def test_stats_and_wake_state_summarize_pending_work() -> None:
    queue = RoleSyncQueue(InMemoryRepository())
    _run(_enqueue(queue, _role_key(role_id="role-1"), {"source": "test"}))
    _run(_enqueue(queue, _role_key(role_id="role-2"), {"source": "test"}, NOW + timedelta(minutes=10)))
    _run(queue.claim(limit=1, worker_id="w-1", now=NOW))

    stats = _run(queue.stats(now=NOW))
    wake = _run(queue.wake_state(NOW))

    assert stats == {"pending": 1, "pending_ready": 0, "processing": 1, "completed": 0, "failed": 0, "total": 2}
    assert wake["pending_ready"] == 0
    assert wake["pending_total"] == 1
    assert wake["next_run_after"] == NOW + timedelta(minutes=10)


def test_list_jobs_rejects_unknown_status_filter() -> None:
    queue = MirrorQueue(InMemoryRepository())

    with pytest.raises(RepositoryValidationError, match="status must be one of"):
        _run(queue.list_jobs(status="stuck"))
