"""OpenTelemetry tracing for the billing core.

The webhook pipeline opens one span per delivery and one child span per
canonical event; checkout creation opens one span per provider call. Before
``setup_tracing`` runs, spans come from the global no-op tracer.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from opentelemetry import trace
from opentelemetry.propagate import set_global_textmap
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.trace import Span, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

TRACER_NAME = "payments_core"

_provider: Optional[TracerProvider] = None


def _otlp_exporter(endpoint: str) -> Optional[SpanExporter]:
    try:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    except ImportError:
        logger.warning("opentelemetry-exporter-otlp is not installed, spans stay local")
        return None
    return OTLPSpanExporter(endpoint=endpoint)


def setup_tracing(
    service_name: str,
    service_version: str,
    environment: str = "development",
    otlp_endpoint: Optional[str] = None,
    enable_console_export: bool = False,
) -> TracerProvider:
    """Install a tracer provider for the process.

    Args:
        service_name: Reported as ``service.name``
        service_version: Reported as ``service.version``
        environment: Reported as ``deployment.environment``
        otlp_endpoint: gRPC collector endpoint; spans are not exported when unset
        enable_console_export: Also print finished spans to stdout
    """
    global _provider

    _provider = TracerProvider(resource=Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
        "deployment.environment": environment,
    }))

    exporters: list[SpanExporter] = []
    if otlp_endpoint:
        exporter = _otlp_exporter(otlp_endpoint)
        if exporter is not None:
            exporters.append(exporter)
    if enable_console_export:
        exporters.append(ConsoleSpanExporter())
    for exporter in exporters:
        _provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(_provider)
    set_global_textmap(TraceContextTextMapPropagator())
    logger.info(f"Tracing ready for {service_name} {service_version} ({len(exporters)} exporters)")
    return _provider


def current_ids() -> tuple[Optional[str], Optional[str]]:
    """Hex (trace_id, span_id) of the active span, or (None, None) outside one."""
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return None, None
    return format(context.trace_id, "032x"), format(context.span_id, "016x")


@contextmanager
def create_span(
    name: str,
    attributes: Optional[dict[str, Any]] = None,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL,
) -> Iterator[Span]:
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(name, kind=kind, attributes=attributes or {}) as span:
        yield span


def add_span_attributes(attributes: dict[str, Any]) -> None:
    span = trace.get_current_span()
    for key, value in attributes.items():
        span.set_attribute(key, value)


def record_exception(exception: BaseException) -> None:
    """Attach the exception to the active span and mark the span failed."""
    span = trace.get_current_span()
    span.record_exception(exception)
    span.set_status(Status(StatusCode.ERROR, str(exception)))


def shutdown_tracing() -> None:
    """Flush pending spans and drop the provider."""
    global _provider
    if _provider is not None:
        _provider.shutdown()
        _provider = None
