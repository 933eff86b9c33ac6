"""
OpenTelemetry Metrics

Outbox delivery counters and latency histogram.
"""

import logging
from typing import Optional, Dict, Any

from opentelemetry import metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.resources import Resource, SERVICE_NAME

from .tracing import SERVICE

logger = logging.getLogger(__name__)

# Global meter
_meter: Optional[metrics.Meter] = None

# Metric instruments
_counters: Dict[str, metrics.Counter] = {}
_histograms: Dict[str, metrics.Histogram] = {}


def init_metrics(
    service_name: str = SERVICE,
    otlp_endpoint: Optional[str] = None,
    export_interval_ms: int = 60000
) -> metrics.Meter:
    """
    Initialize OpenTelemetry metrics.

    Args:
        service_name: Name of the service
        otlp_endpoint: OTLP exporter endpoint
        export_interval_ms: Export interval in milliseconds

    Returns:
        Configured meter
    """
    global _meter

    readers = []

    if otlp_endpoint:
        otlp_exporter = OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True)
        readers.append(PeriodicExportingMetricReader(
            otlp_exporter,
            export_interval_millis=export_interval_ms
        ))
        logger.info(f"OTel metrics: OTLP exporter configured -> {otlp_endpoint}")

    resource = Resource.create({SERVICE_NAME: service_name})

    provider = MeterProvider(resource=resource, metric_readers=readers)
    metrics.set_meter_provider(provider)

    _meter = metrics.get_meter(service_name)
    _counters.clear()
    _histograms.clear()
    _init_standard_metrics()

    logger.info(f"OTel metrics initialized: {service_name}")

    return _meter


def _init_standard_metrics():
    """Initialize outbox metrics."""
    meter = get_meter()

    _counters["outbox_claimed_total"] = meter.create_counter(
        "outbox_claimed_total",
        description="Outbox events claimed for delivery",
        unit="1"
    )

    _counters["outbox_delivered_total"] = meter.create_counter(
        "outbox_delivered_total",
        description="Outbox events delivered",
        unit="1"
    )

    _counters["outbox_failed_total"] = meter.create_counter(
        "outbox_failed_total",
        description="Failed outbox delivery attempts",
        unit="1"
    )

    _counters["outbox_dead_total"] = meter.create_counter(
        "outbox_dead_total",
        description="Outbox events that exhausted automatic retries",
        unit="1"
    )

    _counters["outbox_admin_actions_total"] = meter.create_counter(
        "outbox_admin_actions_total",
        description="Operator actions on outbox events",
        unit="1"
    )

    _histograms["outbox_delivery_duration_seconds"] = meter.create_histogram(
        "outbox_delivery_duration_seconds",
        description="Outbox delivery attempt duration",
        unit="s"
    )


def get_meter() -> metrics.Meter:
    """Get the global meter."""
    global _meter
    if _meter is None:
        _meter = metrics.get_meter(SERVICE)
    return _meter


def record_counter(
    name: str,
    value: int = 1,
    attributes: Dict[str, Any] = None
):
    """Record a counter metric."""
    if not _counters:
        _init_standard_metrics()
    if name in _counters:
        _counters[name].add(value, attributes or {})


def record_histogram(
    name: str,
    value: float,
    attributes: Dict[str, Any] = None
):
    """Record a histogram metric."""
    if not _histograms:
        _init_standard_metrics()
    if name in _histograms:
        _histograms[name].record(value, attributes or {})
