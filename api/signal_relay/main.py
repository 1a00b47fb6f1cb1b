from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from signal_relay.api.router import api_router
from signal_relay.core.config import Settings, get_settings
from signal_relay.core.telemetry import (
    TelemetryRuntime,
    configure_api_logging,
    setup_api_telemetry,
    shutdown_api_telemetry,
)
from signal_relay.services.repository import get_repository

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


def _configured_credentials(current: Settings) -> str:
    surfaces = {
        "internal": current.internal_api_token,
        "mirror_worker": current.mirror_worker_token or current.role_sync_worker_token,
        "role_sync_worker": current.role_sync_worker_token,
    }
    return ",".join(name for name, token in surfaces.items() if (token or "").strip()) or "none"


@asynccontextmanager
async def lifespan(_: FastAPI):
    current = get_settings()
    logger.info(
        "signal relay starting environment=%s storage_backend=%s credentials=%s",
        current.environment,
        current.storage_backend,
        _configured_credentials(current),
    )
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_api_telemetry(app, _telemetry_runtime)
        await get_repository().close()
        get_repository.cache_clear()


configure_api_logging(settings)
app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_api_telemetry(app, settings)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)
