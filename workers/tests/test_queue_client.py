from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx

from relay_worker.services.queue_client import QueueClient


def _client(handler, *, mirror_token: str | None = "mirror-secret", role_sync_token: str | None = "role-secret") -> QueueClient:
    return QueueClient(
        "http://relay.test/",
        mirror_token=mirror_token,
        role_sync_token=role_sync_token,
        transport=httpx.MockTransport(handler),
    )


def test_claim_posts_worker_id_with_queue_token() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"jobs": [{"id": "job-1", "claim_token": "tok"}]})

    jobs = asyncio.run(_client(handler).claim("role_sync", worker_id="worker-a", limit=3))

    assert jobs == [{"id": "job-1", "claim_token": "tok"}]
    assert seen["url"] == "http://relay.test/role-sync/jobs/claim"
    assert seen["auth"] == "Bearer role-secret"
    assert seen["body"] == {"worker_id": "worker-a", "limit": 3}


def test_mirror_queue_falls_back_to_role_sync_token() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True, "ignored": False, "status": "completed"})

    client = _client(handler, mirror_token=" ")
    result = asyncio.run(
        client.complete(
            "mirror",
            "job-9",
            claim_token="tok",
            success=True,
            result_metadata={"mirrored_message_id": "discord-1"},
        )
    )

    assert client.has_credentials("mirror")
    assert result["status"] == "completed"
    assert seen["url"] == "http://relay.test/mirror/jobs/job-9/complete"
    assert seen["auth"] == "Bearer role-secret"
    assert seen["body"] == {
        "claim_token": "tok",
        "success": True,
        "error": None,
        "result_metadata": {"mirrored_message_id": "discord-1"},
    }


def test_queue_without_any_token_reports_no_credentials() -> None:
    client = _client(lambda request: httpx.Response(200), mirror_token=None, role_sync_token=None)
    assert not client.has_credentials("mirror")
    assert not client.has_credentials("role_sync")


def test_wake_state_is_parsed_from_wake_endpoint() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/queues/wake"
        return httpx.Response(
            200,
            json={
                "server_now": "2024-05-01T12:00:00Z",
                "mirror": {"pending_ready": 2, "pending_total": 2},
                "role_sync": {"pending_ready": 0, "pending_total": 0},
            },
        )

    state = asyncio.run(_client(handler).wake_state())
    assert state.queues["mirror"].pending_ready == 2


def test_http_errors_are_raised() -> None:
    client = _client(lambda request: httpx.Response(401, json={"detail": "unauthorized"}))
    try:
        asyncio.run(client.claim("mirror", worker_id="worker-a", limit=1))
    except httpx.HTTPStatusError as exc:
        assert exc.response.status_code == 401
    else:
        raise AssertionError("expected HTTPStatusError")
