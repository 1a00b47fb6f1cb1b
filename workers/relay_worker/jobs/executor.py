from __future__ import annotations

import importlib
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000

JobHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any] | None] | dict[str, Any] | None]


@dataclass(slots=True)
class JobOutcome:
    success: bool
    error: str | None = None
    result_metadata: dict[str, Any] = field(default_factory=dict)


def load_handler(path: str) -> JobHandler:
    """Resolve a ``package.module:callable`` import path to a job handler."""
    module_name, separator, attr = path.partition(":")
    if not separator or not module_name.strip() or not attr.strip():
        raise ValueError(f"handler path must look like 'package.module:callable', got {path!r}")

    module = importlib.import_module(module_name.strip())
    handler: Any = module
    for part in attr.strip().split("."):
        handler = getattr(handler, part)
    if not callable(handler):
        raise ValueError(f"handler {path!r} is not callable")
    return handler


async def execute_job(job: dict[str, Any], handler: JobHandler) -> JobOutcome:
    try:
        result = handler(job)
        if inspect.isawaitable(result):
            result = await result
    except Exception as exc:
        logger.warning("job handler raised job_id=%s error=%s", job.get("id"), exc)
        message = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
        return JobOutcome(success=False, error=message[:MAX_ERROR_LENGTH])

    if result is None:
        return JobOutcome(success=True)
    if not isinstance(result, dict):
        return JobOutcome(success=False, error=f"handler returned {type(result).__name__}, expected dict")
    return JobOutcome(success=True, result_metadata=result)
