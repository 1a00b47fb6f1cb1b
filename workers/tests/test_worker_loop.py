from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest
from pydantic import ValidationError

from relay_worker.core.config import Settings
from relay_worker.main import load_handlers, process_queues
from relay_worker.services.queue_client import QueueClient


class FakeRelayApi:
    """Serves one claim batch per queue and records completions."""

    def __init__(self, jobs: dict[str, list[dict[str, Any]]], failing: set[str] | None = None) -> None:
        self.jobs = jobs
        self.failing = failing or set()
        self.completions: list[tuple[str, dict[str, Any]]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/jobs/claim"):
            queue = "mirror" if path.startswith("/mirror") else "role_sync"
            return httpx.Response(200, json={"jobs": self.jobs.pop(queue, [])})
        if path.endswith("/complete"):
            job_id = path.split("/")[-2]
            self.completions.append((job_id, json.loads(request.content)))
            if job_id in self.failing:
                return httpx.Response(502, json={"detail": "bad gateway"})
            ignored = job_id == "stale-job"
            return httpx.Response(
                200,
                json={"ok": not ignored, "ignored": ignored, "reason": "claim_token_mismatch" if ignored else None},
            )
        return httpx.Response(404)


def _client(api: FakeRelayApi) -> QueueClient:
    return QueueClient(
        "http://relay.test",
        mirror_token="mirror-secret",
        role_sync_token="role-secret",
        transport=httpx.MockTransport(api),
    )


def test_process_queues_reports_success_and_failure_outcomes() -> None:
    api = FakeRelayApi(
        {
            "mirror": [{"id": "job-1", "claim_token": "tok-1", "source_message_id": "m1"}],
            "role_sync": [{"id": "job-2", "claim_token": "tok-2"}],
        }
    )

    async def mirror_handler(job: dict[str, Any]) -> dict[str, Any]:
        return {"mirrored_message_id": f"copy-{job['source_message_id']}"}

    def role_handler(job: dict[str, Any]) -> None:
        raise PermissionError("missing manage roles permission")

    processed = asyncio.run(
        process_queues(
            _client(api),
            {"mirror": mirror_handler, "role_sync": role_handler},
            worker_id="worker-a",
            limit=5,
        )
    )

    assert processed == 2
    completions = dict(api.completions)
    assert completions["job-1"]["success"] is True
    assert completions["job-1"]["result_metadata"] == {"mirrored_message_id": "copy-m1"}
    assert completions["job-2"]["success"] is False
    assert completions["job-2"]["error"] == "PermissionError: missing manage roles permission"
    assert completions["job-2"]["claim_token"] == "tok-2"


def test_ignored_completion_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    api = FakeRelayApi({"mirror": [{"id": "stale-job", "claim_token": "old"}]})

    with caplog.at_level("WARNING", logger="relay_worker.main"):
        processed = asyncio.run(
            process_queues(_client(api), {"mirror": lambda job: {}}, worker_id="worker-a", limit=5)
        )

    assert processed == 1
    assert "completion ignored" in caplog.text
    assert "claim_token_mismatch" in caplog.text


def test_empty_claims_process_nothing() -> None:
    api = FakeRelayApi({})
    processed = asyncio.run(process_queues(_client(api), {"mirror": lambda job: {}}, worker_id="w", limit=5))
    assert processed == 0
    assert api.completions == []


def test_load_handlers_only_includes_configured_queues() -> None:
    settings = Settings(mirror_handler="relay_worker.jobs.handlers:log_mirror_job", role_sync_handler=None)
    handlers = load_handlers(settings)
    assert list(handlers) == ["mirror"]


def test_settings_reject_inverted_wake_window() -> None:
    with pytest.raises(ValidationError):
        Settings(wake_fallback_min_seconds=5.0, wake_fallback_max_seconds=1.0)


def test_failed_completion_does_not_abandon_rest_of_batch(caplog: pytest.LogCaptureFixture) -> None:
    api = FakeRelayApi(
        {"mirror": [{"id": f"job-{n}", "claim_token": f"tok-{n}"} for n in (1, 2, 3)]},
        failing={"job-1"},
    )
    executed: list[str] = []

    def handler(job: dict[str, Any]) -> dict[str, Any]:
        executed.append(job["id"])
        return {}

    with caplog.at_level("ERROR", logger="relay_worker.main"):
        processed = asyncio.run(process_queues(_client(api), {"mirror": handler}, worker_id="w", limit=5))

    assert executed == ["job-1", "job-2", "job-3"]
    assert [job_id for job_id, _ in api.completions] == ["job-1", "job-2", "job-3"]
    assert processed == 2
    assert "job completion failed queue=mirror job_id=job-1" in caplog.text
