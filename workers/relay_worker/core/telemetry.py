from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from typing import Any

import httpx
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_INSTANCE_ID, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from relay_worker.core.config import Settings
from relay_worker.services.queue_client import QUEUE_PATHS

logger = logging.getLogger(__name__)

_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()
_LOG_CORRELATION_INSTALLED = False
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s worker=%(worker_id)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
_worker_id = "-"


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None


def configure_worker_logging(settings: Settings) -> None:
    global _worker_id
    _worker_id = settings.worker_id
    install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=settings.log_level.upper(), format=_LOG_FORMAT)


def setup_worker_telemetry(settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    if settings.otel_log_correlation:
        install_log_correlation()

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                SERVICE_INSTANCE_ID: settings.worker_id,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
            }
        ),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    exporter = build_span_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _HTTPX_INSTRUMENTOR.instrument(tracer_provider=provider, async_request_hook=_tag_relay_request)
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_worker_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def queue_for_path(path: str) -> str | None:
    """Map a relay API path to the queue it serves; ``wake`` for the shared wake endpoint."""
    if path.rstrip("/") == "/queues/wake":
        return "wake"
    for queue, prefix in QUEUE_PATHS.items():
        if path.startswith(f"{prefix}/"):
            return queue
    return None


async def _tag_relay_request(span: Any, request: Any) -> None:
    if span is None or not span.is_recording():
        return
    queue = queue_for_path(httpx.URL(str(request.url)).path)
    if queue is not None:
        span.set_attribute("relay.queue", queue)


def build_span_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logger.info("otel exporter endpoint not set; worker spans stay local worker=%s", settings.worker_id)
        return None

    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    pairs = (item.partition("=") for item in raw.split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}


def install_log_correlation() -> None:
    global _LOG_CORRELATION_INSTALLED
    if _LOG_CORRELATION_INSTALLED:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _BASE_LOG_RECORD_FACTORY(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.worker_id = _worker_id
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else "0" * 32
        record.span_id = format(context.span_id, "016x") if context.is_valid else "0" * 16
        return record

    logging.setLogRecordFactory(record_factory)
    _LOG_CORRELATION_INSTALLED = True
