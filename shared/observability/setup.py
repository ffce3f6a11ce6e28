import logging
import structlog
from fastapi import FastAPI, Request
from prometheus_fastapi_instrumentator import Instrumentator

# OpenTelemetry
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource, SERVICE_NAME
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from shared.config import settings

_tracer_provider: TracerProvider | None = None

# Correlates one shipment across order and inventory log lines
CONTEXT_HEADERS = {
    "x-idempotency-key": "idempotency_key",
    "x-request-id": "request_id",
}


# 1. Structlog processor: trace/span ids on every line
def add_otel_ids(logger, log_method, event_dict):
    span = trace.get_current_span()
    if span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = trace.format_trace_id(ctx.trace_id)
        event_dict["span_id"] = trace.format_span_id(ctx.span_id)
    return event_dict


# 2. JSON logs, level from LOG_LEVEL
def configure_logging():
    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_otel_ids,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# 3. Per-request log context
def bind_request_context(app: FastAPI, service_name: str):
    @app.middleware("http")
    async def request_context(request: Request, call_next):
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            service=service_name,
            method=request.method,
            path=request.url.path,
        )
        for header, key in CONTEXT_HEADERS.items():
            value = request.headers.get(header)
            if value:
                structlog.contextvars.bind_contextvars(**{key: value})
        return await call_next(request)


# 4. Tracing; the provider is process-global, so it is installed once
def configure_tracing(app: FastAPI, service_name: str):
    global _tracer_provider

    if _tracer_provider is None:
        _tracer_provider = TracerProvider(resource=Resource.create({SERVICE_NAME: service_name}))
        trace.set_tracer_provider(_tracer_provider)
        _tracer_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.OTLP_ENDPOINT, insecure=True))
        )
        # Child spans for order -> inventory calls
        HTTPXClientInstrumentor().instrument()

    FastAPIInstrumentor.instrument_app(app)


# 5. Prometheus /metrics. Status codes stay ungrouped: 409 replays and 503s matter here.
def configure_metrics(app: FastAPI):
    Instrumentator(
        should_group_status_codes=False,
        excluded_handlers=["/health", "/metrics"],
    ).instrument(app).expose(app)


# --- THE MASTER SETUP FUNCTION ---
def setup_observability(app: FastAPI, service_name: str):
    """
    Bootstraps logging, tracing and metrics for one service app.
    Tracing and metrics can be switched off (tests, or both apps in one process).
    """
    configure_logging()
    bind_request_context(app, service_name)
    if settings.TRACING_ENABLED:
        configure_tracing(app, service_name)
    if settings.METRICS_ENABLED:
        configure_metrics(app)
