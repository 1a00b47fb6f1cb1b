from __future__ import annotations

from typing import Any

import httpx

from relay_worker.jobs.wake import WakeState

QUEUE_PATHS = {
    "mirror": "/mirror",
    "role_sync": "/role-sync",
}


class QueueClient:
    def __init__(
        self,
        base_url: str,
        *,
        mirror_token: str | None,
        role_sync_token: str | None,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        role_sync = (role_sync_token or "").strip() or None
        # Mirror endpoints accept the role-sync credential when no dedicated one exists.
        mirror = (mirror_token or "").strip() or role_sync
        self.tokens: dict[str, str | None] = {"mirror": mirror, "role_sync": role_sync}

    def has_credentials(self, queue: str) -> bool:
        return bool(self.tokens.get(queue))

    async def claim(self, queue: str, *, worker_id: str, limit: int) -> list[dict[str, Any]]:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}{QUEUE_PATHS[queue]}/jobs/claim",
                json={"worker_id": worker_id, "limit": limit},
                headers=self._headers(queue),
            )
            response.raise_for_status()
            return list(response.json().get("jobs", []))

    async def complete(
        self,
        queue: str,
        job_id: str,
        *,
        claim_token: str,
        success: bool,
        error: str | None = None,
        result_metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload = {
            "claim_token": claim_token,
            "success": success,
            "error": error,
            "result_metadata": result_metadata or {},
        }
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}{QUEUE_PATHS[queue]}/jobs/{job_id}/complete",
                json=payload,
                headers=self._headers(queue),
            )
            response.raise_for_status()
            return response.json()

    async def wake_state(self) -> WakeState:
        token = self.tokens["role_sync"] or self.tokens["mirror"]
        async with self._client() as client:
            response = await client.get(
                f"{self.base_url}/queues/wake",
                headers={"Authorization": f"Bearer {token}"} if token else {},
            )
            response.raise_for_status()
            return WakeState.from_payload(response.json())

    def _headers(self, queue: str) -> dict[str, str]:
        token = self.tokens.get(queue)
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport)
