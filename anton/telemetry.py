"""Telemetry setup for OpenTelemetry traces and metrics.

Spans and metrics are exported over OTLP only when OTLP_ENABLED=true.
Otherwise SDK providers without exporters are installed, so every span and
metric call in the run controller stays a cheap local no-op.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

from anton.config import RunConfig

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Module-level metric instruments (set by create_metrics)
tasks_counter: metrics.Counter
commits_counter: metrics.Counter
loops_counter: metrics.Counter
cost_counter: metrics.Counter
task_duration: metrics.Histogram


def _exporting_providers(endpoint: str, resource: Resource) -> tuple[TracerProvider, MeterProvider]:
    # OTLP exporters live in the optional "otlp" extra
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
        OTLPMetricExporter,
    )
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
        OTLPSpanExporter,
    )
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=endpoint))
    return tracer_provider, MeterProvider(resource=resource, metric_readers=[reader])


def setup_telemetry(config: RunConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize OpenTelemetry for a run.

    Args:
        config: Run configuration with OTLP endpoint and service name

    Returns:
        Tuple of (tracer, meter) for creating spans and recording metrics
    """
    resource = Resource.create({"service.name": config.service_name})
    if os.getenv("OTLP_ENABLED", "false").lower() == "true" and config.otlp_endpoint:
        tracer_provider, meter_provider = _exporting_providers(config.otlp_endpoint, resource)
    else:
        tracer_provider = TracerProvider(resource=resource)
        meter_provider = MeterProvider(resource=resource)

    trace.set_tracer_provider(tracer_provider)
    metrics.set_meter_provider(meter_provider)
    return trace.get_tracer(config.service_name), metrics.get_meter(config.service_name)


def create_metrics(meter: metrics.Meter) -> None:
    """Create the run's metric instruments.

    Attempts are counted by status, loops by kind (auto-recovered or
    final-failure). Agent cost comes from the session's reported spend.
    """
    global tasks_counter, commits_counter, loops_counter, cost_counter, task_duration

    tasks_counter = meter.create_counter(
        "anton_tasks_total",
        description="Task attempts by outcome",
    )
    commits_counter = meter.create_counter(
        "anton_commits_total",
        description="Commits made for accepted tasks",
    )
    loops_counter = meter.create_counter(
        "anton_loops_detected_total",
        description="Repetitive tool-call loops by kind",
    )
    cost_counter = meter.create_counter(
        "anton_agent_cost_usd_total",
        description="Agent spend reported by sessions",
        unit="USD",
    )
    task_duration = meter.create_histogram(
        "anton_task_duration_seconds",
        description="Task attempt duration",
        unit="s",
    )
