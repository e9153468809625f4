"""
Observability and monitoring setup for the voice profile service.
"""

import asyncio
from functools import wraps
from typing import Any, Callable, Dict, Optional

import structlog
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import ConsoleMetricExporter, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

logger = structlog.get_logger()

# Global tracer and meter
tracer: Optional[trace.Tracer] = None
meter: Optional[metrics.Meter] = None

# Metrics instruments
request_counter: Optional[metrics.Counter] = None
request_duration: Optional[metrics.Histogram] = None
error_counter: Optional[metrics.Counter] = None
enrollment_counter: Optional[metrics.Counter] = None
enrollment_sample_counter: Optional[metrics.Counter] = None
sample_quality_histogram: Optional[metrics.Histogram] = None
verification_counter: Optional[metrics.Counter] = None
verification_score_histogram: Optional[metrics.Histogram] = None


def setup_observability(
    service_name: str = "voice-profile-service",
    service_version: str = "1.0.0",
    otlp_endpoint: Optional[str] = None,
    enable_console_export: bool = False
) -> None:
    """
    Set up OpenTelemetry tracing and metrics.

    Args:
        service_name: Name of the service for tracing
        service_version: Version of the service
        otlp_endpoint: OTLP endpoint for trace/metric export
        enable_console_export: Whether to enable console export for development
    """
    global tracer, meter
    global request_counter, request_duration, error_counter
    global enrollment_counter, enrollment_sample_counter, sample_quality_histogram
    global verification_counter, verification_score_histogram

    logger.info(
        "Setting up observability",
        service_name=service_name,
        service_version=service_version,
        otlp_endpoint=otlp_endpoint
    )

    resource = Resource.create({
        "service.name": service_name,
        "service.version": service_version,
    })

    trace_provider = TracerProvider(resource=resource)
    if otlp_endpoint:
        trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
    if enable_console_export:
        trace_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer(__name__)

    metric_readers = []
    if otlp_endpoint:
        metric_readers.append(
            PeriodicExportingMetricReader(
                exporter=OTLPMetricExporter(endpoint=otlp_endpoint),
                export_interval_millis=30000  # 30 seconds
            )
        )
    if enable_console_export:
        metric_readers.append(
            PeriodicExportingMetricReader(
                exporter=ConsoleMetricExporter(),
                export_interval_millis=60000  # 60 seconds
            )
        )

    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=metric_readers))
    meter = metrics.get_meter(__name__)

    request_counter = meter.create_counter(
        name="http_requests_total",
        description="Total number of HTTP requests",
        unit="1"
    )
    request_duration = meter.create_histogram(
        name="http_request_duration_seconds",
        description="HTTP request duration in seconds",
        unit="s"
    )
    error_counter = meter.create_counter(
        name="http_errors_total",
        description="Total number of HTTP errors",
        unit="1"
    )
    enrollment_counter = meter.create_counter(
        name="voice_enrollments_total",
        description="Total number of completed or failed voice enrollments",
        unit="1"
    )
    enrollment_sample_counter = meter.create_counter(
        name="voice_enrollment_samples_total",
        description="Total number of recorded enrollment phrases",
        unit="1"
    )
    sample_quality_histogram = meter.create_histogram(
        name="voice_enrollment_sample_quality",
        description="Quality scores of recorded enrollment phrases",
        unit="1"
    )
    verification_counter = meter.create_counter(
        name="voice_verifications_total",
        description="Total number of voice verifications",
        unit="1"
    )
    verification_score_histogram = meter.create_histogram(
        name="voice_verification_score",
        description="Voice verification match scores",
        unit="1"
    )

    logger.info("Observability setup completed")


def instrument_fastapi_app(app) -> None:
    """
    Instrument FastAPI application with OpenTelemetry.

    Args:
        app: FastAPI application instance
    """
    if tracer is None:
        logger.warning("Tracer not initialized, call setup_observability() first")
        return

    FastAPIInstrumentor.instrument_app(app)
    HTTPXClientInstrumentor().instrument()
    LoggingInstrumentor().instrument(set_logging_format=True)

    logger.info("FastAPI application instrumented with OpenTelemetry")


def trace_function(operation_name: Optional[str] = None):
    """
    Decorator to trace function execution.

    Args:
        operation_name: Optional custom operation name for the span
    """
    def decorator(func: Callable) -> Callable:
        def start_span():
            span_name = operation_name or f"{func.__module__}.{func.__name__}"
            return tracer.start_as_current_span(span_name)

        def annotate_failure(span, error: Exception) -> None:
            span.record_exception(error)
            span.set_attribute("success", False)
            span.set_attribute("error.type", type(error).__name__)
            span.set_attribute("error.message", str(error))

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            if tracer is None:
                return await func(*args, **kwargs)

            with start_span() as span:
                span.set_attribute("function.name", func.__name__)
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    annotate_failure(span, e)
                    raise
                span.set_attribute("success", True)
                return result

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            if tracer is None:
                return func(*args, **kwargs)

            with start_span() as span:
                span.set_attribute("function.name", func.__name__)
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    annotate_failure(span, e)
                    raise
                span.set_attribute("success", True)
                return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def record_enrollment_metrics(success: bool, processing_time: float, level: str, samples: int) -> None:
    """
    Record metrics for a completion attempt.

    Args:
        success: Whether the profile was stored
        processing_time: Time taken to aggregate and store, in seconds
        level: Enrollment level (standard or advanced)
        samples: Number of samples aggregated
    """
    if enrollment_counter is None or request_duration is None:
        return

    attributes = {
        "operation": "enrollment",
        "success": str(success).lower(),
        "level": level
    }
    enrollment_counter.add(1, attributes)
    request_duration.record(processing_time, attributes)

    logger.info(
        "Enrollment metrics recorded",
        success=success,
        processing_time=processing_time,
        level=level,
        samples=samples
    )


def record_sample_metrics(quality_score: float, duration_ms: int) -> None:
    """Record a single recorded enrollment phrase."""
    if enrollment_sample_counter is None or sample_quality_histogram is None:
        return

    enrollment_sample_counter.add(1, {"operation": "record_phrase"})
    sample_quality_histogram.record(quality_score, {"short": str(duration_ms < 2000).lower()})


def record_verification_metrics(
    is_match: Optional[bool],
    processing_time: float,
    match_score: Optional[float]
) -> None:
    """
    Record metrics for verification operations.

    Args:
        is_match: Verification outcome, None when voice gating was inactive
        processing_time: Time taken for verification in seconds
        match_score: Weighted match score (if available)
    """
    if verification_counter is None or request_duration is None:
        return

    outcome = "inactive" if is_match is None else ("match" if is_match else "no_match")
    attributes = {
        "operation": "verification",
        "outcome": outcome
    }
    verification_counter.add(1, attributes)
    request_duration.record(processing_time, attributes)

    if match_score is not None and verification_score_histogram is not None:
        verification_score_histogram.record(match_score, {"outcome": outcome})

    logger.info(
        "Verification metrics recorded",
        outcome=outcome,
        processing_time=processing_time,
        match_score=match_score
    )


def record_http_metrics(
    method: str,
    path: str,
    status_code: int,
    processing_time: float
) -> None:
    """
    Record HTTP request metrics.

    Args:
        method: HTTP method
        path: Request path
        status_code: HTTP status code
        processing_time: Request processing time in seconds
    """
    if request_counter is None or request_duration is None or error_counter is None:
        return

    attributes = {
        "method": method,
        "path": path,
        "status_code": str(status_code)
    }
    request_counter.add(1, attributes)
    request_duration.record(processing_time, attributes)

    if status_code >= 400:
        error_counter.add(1, {
            **attributes,
            "error_type": "client_error" if status_code < 500 else "server_error"
        })


def get_trace_context() -> Dict[str, Any]:
    """
    Get current trace context information.

    Returns:
        Dict with trace ID and span ID if available
    """
    current_span = trace.get_current_span()
    if current_span is None or not current_span.is_recording():
        return {}

    span_context = current_span.get_span_context()
    return {
        "trace_id": f"{span_context.trace_id:032x}",
        "span_id": f"{span_context.span_id:016x}",
    }
