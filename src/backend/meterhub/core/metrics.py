"""Prometheus metrics instrumentation for MeterHub."""

from prometheus_client import Counter, Histogram
from prometheus_fastapi_instrumentator import Instrumentator, metrics

# Custom metrics for MeterHub

# Readings counter, labelled by outcome
readings_total = Counter(
    "meterhub_readings_total",
    "Readings received from devices",
    ["result"],
)

# Alarms raised by the threshold evaluator
alarms_total = Counter(
    "meterhub_alarms_total",
    "Alarms raised during ingestion",
    ["alarm_type", "severity"],
)

# Ingestion request latency
ingestion_time = Histogram(
    "meterhub_ingestion_seconds",
    "Time spent processing one ingestion request",
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)


def setup_metrics(app) -> Instrumentator:
    """Set up Prometheus metrics instrumentation for FastAPI app."""
    instrumentator = Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        should_respect_env_var=False,  # gated by settings.metrics_enabled
        should_instrument_requests_inprogress=True,
        excluded_handlers=["/health", "/metrics"],
        inprogress_name="http_requests_inprogress",
        inprogress_labels=True,
    )

    # Add default metrics
    instrumentator.add(
        metrics.default(
            metric_namespace="",
            metric_subsystem="",
            latency_highr_buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )
    )

    # Instrument the app
    instrumentator.instrument(app)

    return instrumentator


def expose_metrics(app, instrumentator: Instrumentator) -> None:
    """Expose the /metrics endpoint."""
    instrumentator.expose(app, include_in_schema=False, should_gzip=True)


# Helper functions for updating custom metrics


def record_readings(processed: int, failed: int) -> None:
    """Count processed and failed readings of one request."""
    if processed:
        readings_total.labels(result="processed").inc(processed)
    if failed:
        readings_total.labels(result="failed").inc(failed)


def record_alarm(alarm_type: str, severity: int) -> None:
    """Increment alarm counter."""
    alarms_total.labels(alarm_type=alarm_type, severity=str(severity)).inc()


def observe_ingestion(duration: float) -> None:
    """Record ingestion request duration."""
    ingestion_time.observe(duration)
