"""Optional OpenTelemetry tracing and metrics with a Prometheus fallback.

Every helper here is a no-op unless ``LMS_OTEL_ENABLED`` is set and the
``otel`` extra is installed, so the indexer can call them unconditionally.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

from lms_explorer import config

logger = logging.getLogger("lms_explorer.observability")

INGESTION_EVENTS = "lms_index_ingestion_events_total"
INGESTION_LATENCY = "lms_index_ingestion_latency_ms"
PARSER_FAILURES = "lms_index_parser_failures_total"
SESSIONS_INDEXED = "lms_index_sessions_indexed_total"

# name -> (kind, unit, description, label names)
_METRICS: dict[str, tuple[str, str, str, tuple[str, ...]]] = {
    INGESTION_EVENTS: ("counter", "1", "Log file ingestion operations", ("entity", "result")),
    INGESTION_LATENCY: ("histogram", "ms", "Latency of log file parses and index rebuilds", ("entity", "result")),
    PARSER_FAILURES: ("counter", "1", "Log lines or files the parser could not use", ("parser",)),
    SESSIONS_INDEXED: ("counter", "1", "Sessions written to the index", ()),
}


@dataclass
class _Telemetry:
    initialized: bool = False
    enabled: bool = False
    tracer: Any = None
    providers: list[Any] = field(default_factory=list)
    otel_instruments: dict[str, Any] = field(default_factory=dict)
    prom_instruments: dict[str, Any] = field(default_factory=dict)


_state = _Telemetry()


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    endpoint = endpoint.rstrip("/")
    if endpoint.endswith("/v1"):
        return endpoint + signal_path[len("/v1"):]
    return endpoint + signal_path


def _label_value(value: str | None) -> str:
    return (value or "").strip() or "unknown"


def is_enabled() -> bool:
    return _state.enabled


def _start_otel(service_name: str) -> bool:
    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return False

    resource = Resource.create({"service.name": service_name, "service.namespace": "lms-log-explorer"})

    trace_provider = TracerProvider(resource=resource)
    span_exporter = OTLPSpanExporter(endpoint=_normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces") or None)
    trace_provider.add_span_processor(BatchSpanProcessor(span_exporter))
    trace.set_tracer_provider(trace_provider)

    metric_exporter = OTLPMetricExporter(endpoint=_normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics") or None)
    meter_provider = MeterProvider(
        resource=resource,
        metric_readers=[PeriodicExportingMetricReader(metric_exporter)],
    )
    metrics.set_meter_provider(meter_provider)

    meter = metrics.get_meter("lms_explorer")
    for name, (kind, unit, description, _labels) in _METRICS.items():
        create = meter.create_histogram if kind == "histogram" else meter.create_counter
        _state.otel_instruments[name] = create(name, unit=unit, description=description)

    _state.tracer = trace.get_tracer("lms_explorer")
    _state.providers = [meter_provider, trace_provider]
    return True


def _start_prometheus(port: int) -> None:
    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(port)
    except (ImportError, OSError) as exc:
        logger.warning("Prometheus fallback not started: %s", exc)
        return

    for name, (kind, _unit, description, labels) in _METRICS.items():
        create = Histogram if kind == "histogram" else Counter
        _state.prom_instruments[name] = create(name, description, list(labels))
    logger.info("Prometheus fallback metrics server listening on port %s", port)


def initialize() -> None:
    """Set up exporters once; later calls are ignored."""
    if _state.initialized:
        return
    _state.initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (LMS_OTEL_ENABLED=false)")
        return

    service_name = config.OTEL_SERVICE_NAME or "lms-log-explorer"
    if not _start_otel(service_name):
        return
    _state.enabled = True

    if config.PROM_PORT > 0:
        _start_prometheus(config.PROM_PORT)

    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)


def shutdown() -> None:
    if not _state.initialized:
        return
    for provider in _state.providers:
        try:
            provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Telemetry provider shutdown failed: %s", exc)
    _state.providers = []
    _state.enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
    if not _state.enabled or _state.tracer is None:
        yield None
        return
    with _state.tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def _emit(name: str, value: float, labels: dict[str, str]) -> None:
    histogram = _METRICS[name][0] == "histogram"

    instrument = _state.otel_instruments.get(name) if _state.enabled else None
    if instrument is not None:
        if histogram:
            instrument.record(value, labels)
        else:
            instrument.add(value, labels)

    prom = _state.prom_instruments.get(name)
    if prom is not None:
        target = prom.labels(**labels) if labels else prom
        if histogram:
            target.observe(value)
        else:
            target.inc(value)


def record_ingestion(entity: str, result: str, duration_ms: float) -> None:
    labels = {"entity": _label_value(entity), "result": _label_value(result)}
    _emit(INGESTION_EVENTS, 1, labels)
    _emit(INGESTION_LATENCY, max(0.0, float(duration_ms)), labels)


def record_parser_failure(parser: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count:
        _emit(PARSER_FAILURES, safe_count, {"parser": _label_value(parser)})


def record_sessions_indexed(count: int) -> None:
    safe_count = max(0, int(count))
    if safe_count:
        _emit(SESSIONS_INDEXED, safe_count, {})
