"""
OpenTelemetry tracing for the aadpi-terminator operator.

Spans are opened for each kopf handler invocation (``traced_handler``) and for
each Microsoft Graph or ARM request (``provider_span``). Export goes to an
OTLP gRPC collector; when tracing is disabled the global no-op tracer makes
both helpers free.
"""

import asyncio
import contextlib
import functools
import logging
from collections.abc import Callable, Iterator
from typing import ParamSpec, TypeVar

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Span, SpanKind, Status, StatusCode, Tracer

from aadpi_terminator.constants import API_GROUP, IDENTITY_REQUEST_KIND

logger = logging.getLogger(__name__)

_tracer_provider: TracerProvider | None = None
_initialized: bool = False

P = ParamSpec("P")
R = TypeVar("R")


def setup_tracing(
    enabled: bool = False,
    endpoint: str = "http://localhost:4317",
    service_name: str = "aadpi-terminator",
    sample_rate: float = 1.0,
    insecure: bool = True,
) -> TracerProvider | None:
    """
    Install the OTLP tracer provider and instrument httpx.

    Args:
        enabled: When False nothing is installed and None is returned
        endpoint: OTLP collector endpoint (gRPC)
        service_name: ``service.name`` resource attribute
        sample_rate: Ratio of root spans kept (0.0-1.0)
        insecure: Connect to the collector without TLS

    Returns:
        The installed TracerProvider, or None when disabled
    """
    global _tracer_provider, _initialized

    if _initialized:
        return _tracer_provider

    _initialized = True
    if not enabled:
        logger.info("OpenTelemetry tracing is disabled")
        return None

    resource = Resource.create(
        {
            "service.name": service_name,
            "k8s.operator.api_group": API_GROUP,
            "k8s.operator.kind": IDENTITY_REQUEST_KIND,
        }
    )
    # Child spans follow the parent's decision
    sampler = ParentBased(root=TraceIdRatioBased(sample_rate))
    _tracer_provider = TracerProvider(resource=resource, sampler=sampler)
    _tracer_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=insecure))
    )
    trace.set_tracer_provider(_tracer_provider)
    HTTPXClientInstrumentor().instrument()

    logger.info(
        f"OpenTelemetry tracing exporting to {endpoint} (sample rate {sample_rate})"
    )
    return _tracer_provider


def shutdown_tracing() -> None:
    """Flush pending spans and remove the httpx instrumentation."""
    global _tracer_provider, _initialized

    if _tracer_provider is not None:
        _tracer_provider.shutdown()
        HTTPXClientInstrumentor().uninstrument()
        _tracer_provider = None
    _initialized = False


def get_tracer(name: str = __name__) -> Tracer:
    return trace.get_tracer(name)


@contextlib.contextmanager
def provider_span(operation: str, method: str, url: str) -> Iterator[Span]:
    """Client span around one identity provider request."""
    tracer = get_tracer("aadpi_terminator.identity_provider")
    with tracer.start_as_current_span(
        f"identity_provider.{operation}",
        kind=SpanKind.CLIENT,
        attributes={
            "azure.operation": operation,
            "http.request.method": method,
            "url.full": url,
        },
    ) as span:
        yield span


def traced_handler(
    operation_name: str,
    span_kind: SpanKind = SpanKind.INTERNAL,
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Wrap an async kopf handler in a span named ``operation_name``.

    The span carries the request's namespace and name; an exception is
    recorded on it and re-raised.
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"traced_handler requires an async handler: {func!r}")

        @functools.wraps(func)
        async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            attributes = {
                "k8s.namespace": str(kwargs.get("namespace", "unknown")),
                "k8s.resource.name": str(kwargs.get("name", "unknown")),
                "k8s.resource.kind": IDENTITY_REQUEST_KIND,
                "kopf.handler": func.__name__,
            }
            with get_tracer(func.__module__).start_as_current_span(
                operation_name,
                kind=span_kind,
                attributes=attributes,
                record_exception=False,
                set_status_on_exception=False,
            ) as span:
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                    raise
                span.set_status(Status(StatusCode.OK))
                return result

        return async_wrapper

    return decorator


def is_tracing_enabled() -> bool:
    return _tracer_provider is not None
