from __future__ import annotations

import asyncio
from typing import Any

import pytest

from relay_worker.jobs import executor
from relay_worker.jobs.handlers import log_mirror_job


def test_load_handler_resolves_module_attribute() -> None:
    handler = executor.load_handler("relay_worker.jobs.handlers:log_role_sync_job")
    assert handler.__name__ == "log_role_sync_job"


@pytest.mark.parametrize("path", ["relay_worker.jobs.handlers", ":log_mirror_job", "relay_worker.jobs.handlers: "])
def test_load_handler_rejects_malformed_paths(path: str) -> None:
    with pytest.raises(ValueError):
        executor.load_handler(path)


def test_load_handler_rejects_non_callables() -> None:
    with pytest.raises(ValueError):
        executor.load_handler("relay_worker.jobs.executor:MAX_ERROR_LENGTH")


def test_execute_job_accepts_sync_and_async_handlers() -> None:
    def sync_handler(job: dict[str, Any]) -> dict[str, Any]:
        return {"seen": job["id"]}

    async def async_handler(job: dict[str, Any]) -> None:
        return None

    sync_outcome = asyncio.run(executor.execute_job({"id": "job-1"}, sync_handler))
    async_outcome = asyncio.run(executor.execute_job({"id": "job-2"}, async_handler))

    assert (sync_outcome.success, sync_outcome.result_metadata) == (True, {"seen": "job-1"})
    assert (async_outcome.success, async_outcome.result_metadata) == (True, {})


def test_execute_job_turns_exceptions_into_failures() -> None:
    async def failing(job: dict[str, Any]) -> dict[str, Any]:
        raise RuntimeError("discord returned 500 " + "x" * 3000)

    outcome = asyncio.run(executor.execute_job({"id": "job-1"}, failing))

    assert outcome.success is False
    assert outcome.error is not None
    assert outcome.error.startswith("RuntimeError: discord returned 500")
    assert len(outcome.error) == executor.MAX_ERROR_LENGTH


def test_execute_job_rejects_non_dict_results() -> None:
    outcome = asyncio.run(executor.execute_job({"id": "job-1"}, lambda job: "done"))
    assert outcome.success is False
    assert outcome.error == "handler returned str, expected dict"


def test_dry_run_mirror_handler_reuses_existing_mirrored_id() -> None:
    fresh = asyncio.run(log_mirror_job({"id": "job-1", "source_message_id": "m1", "target_guild_id": "g"}))
    repeat = asyncio.run(
        log_mirror_job({"id": "job-2", "source_message_id": "m1", "existing_mirrored_message_id": "discord-7"})
    )

    assert fresh == {"mirrored_message_id": "dry-run-m1", "mirrored_guild_id": "g"}
    assert repeat["mirrored_message_id"] == "discord-7"
