from __future__ import annotations

import random as _random
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

QUEUE_NAMES = ("mirror", "role_sync")
WakeReason = Literal["ready_jobs", "next_due", "fallback"]


@dataclass(slots=True)
class QueueWake:
    pending_ready: int = 0
    pending_total: int = 0
    next_run_after: datetime | None = None
    wake_updated_at: datetime | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any] | None) -> QueueWake:
        payload = payload or {}
        return cls(
            pending_ready=int(payload.get("pending_ready") or 0),
            pending_total=int(payload.get("pending_total") or 0),
            next_run_after=_parse_datetime(payload.get("next_run_after")),
            wake_updated_at=_parse_datetime(payload.get("wake_updated_at")),
        )


@dataclass(slots=True)
class WakeState:
    server_now: datetime
    queues: dict[str, QueueWake]

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> WakeState:
        server_now = _parse_datetime(payload.get("server_now"))
        if server_now is None:
            raise ValueError("wake state is missing server_now")
        return cls(
            server_now=server_now,
            queues={name: QueueWake.from_payload(payload.get(name)) for name in QUEUE_NAMES},
        )


@dataclass(slots=True)
class WakeDelay:
    delay_seconds: float
    reason: WakeReason


def jitter_seconds(minimum: float, maximum: float, random: Callable[[], float]) -> float:
    if maximum <= minimum:
        return minimum
    value = minimum + (maximum - minimum) * random()
    return max(minimum, min(maximum, value))


def compute_wake_delay(
    state: WakeState | None,
    *,
    connection_healthy: bool,
    fallback_min_seconds: float,
    fallback_max_seconds: float,
    queues: Iterable[str] = QUEUE_NAMES,
    random: Callable[[], float] = _random.random,
) -> WakeDelay:
    """Decide how long the poll loop sleeps before the next claim attempt.

    Ready work wakes immediately, otherwise the loop sleeps until the nearest
    scheduled retry. Without a usable wake snapshot it falls back to a jittered
    delay so idle workers do not poll in lockstep.
    """
    if not connection_healthy or state is None:
        return WakeDelay(jitter_seconds(fallback_min_seconds, fallback_max_seconds, random), "fallback")

    watched = [state.queues[name] for name in queues if name in state.queues]
    if sum(queue.pending_ready for queue in watched) > 0:
        return WakeDelay(0.0, "ready_jobs")

    due_times = [queue.next_run_after for queue in watched if queue.next_run_after is not None]
    if due_times:
        delay = (min(due_times) - state.server_now).total_seconds()
        return WakeDelay(max(0.0, delay), "next_due")

    return WakeDelay(jitter_seconds(fallback_min_seconds, fallback_max_seconds, random), "fallback")


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
