from __future__ import annotations

from dataclasses import dataclass
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from partage_expiry.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
UNTRACED_PATHS = "healthz"
_ENDPOINT_ENV_VARS = ("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", "OTEL_EXPORTER_OTLP_ENDPOINT")

logger = logging.getLogger(__name__)
_httpx_instrumentor = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None
    app: FastAPI | None = None


class SpanContextRecordFactory:
    """Log record factory that stamps the active span's ids on each record.

    Records emitted outside a span get all-zero ids so ``LOG_FORMAT`` always
    resolves.
    """

    def __init__(self, base) -> None:
        self.base = base

    def __call__(self, *args: object, **kwargs: object) -> logging.LogRecord:
        record = self.base(*args, **kwargs)
        span_context = trace.get_current_span().get_span_context()
        valid = span_context.is_valid
        record.trace_id = format(span_context.trace_id if valid else 0, "032x")
        record.span_id = format(span_context.span_id if valid else 0, "016x")
        return record


def configure_logging() -> None:
    install_log_correlation()
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)


def install_log_correlation() -> None:
    current = logging.getLogRecordFactory()
    if not isinstance(current, SpanContextRecordFactory):
        logging.setLogRecordFactory(SpanContextRecordFactory(current))


def setup_telemetry(settings: Settings, app: FastAPI | None = None) -> TelemetryRuntime:
    """Install the tracer provider and instrument outgoing store calls.

    When ``app`` is given its requests are traced too, except the health check.
    """
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)
    if settings.otel_log_correlation:
        install_log_correlation()

    resource = Resource.create(
        {SERVICE_NAME: settings.otel_service_name, DEPLOYMENT_ENVIRONMENT: settings.environment}
    )
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio))
    exporter = build_span_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    if not _httpx_instrumentor.is_instrumented_by_opentelemetry:
        _httpx_instrumentor.instrument()
    if app is not None:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider, excluded_urls=UNTRACED_PATHS)
    return TelemetryRuntime(enabled=True, provider=provider, app=app)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    if runtime.app is not None:
        FastAPIInstrumentor.uninstrument_app(runtime.app)
    if _httpx_instrumentor.is_instrumented_by_opentelemetry:
        _httpx_instrumentor.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def resolve_otlp_endpoint(settings: Settings) -> str | None:
    candidates = [settings.otel_exporter_otlp_endpoint, *(os.getenv(name) for name in _ENDPOINT_ENV_VARS)]
    return next((candidate for candidate in candidates if candidate), None)


def build_span_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = resolve_otlp_endpoint(settings)
    if endpoint is None:
        logger.info("no OTLP endpoint configured, spans for %s stay in process", settings.otel_service_name)
        return None
    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` pairs, skipping entries without a key or ``=``."""
    pairs = (item.partition("=") for item in (raw or "").split(","))
    return {key.strip(): value.strip() for key, sep, value in pairs if sep and key.strip()}
