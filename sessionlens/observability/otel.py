"""OpenTelemetry + Prometheus fallback wiring for SessionLens ingestion.

Every reader metric is declared once in ``_METRICS`` and materialized on
whichever backends are configured: OTLP export when
``SESSIONLENS_OTEL_ENABLED`` is set, and a Prometheus scrape endpoint when
``SESSIONLENS_PROM_PORT`` is also positive. With neither, the ``record_*``
helpers are no-ops so parsers can call them unconditionally.
"""
from __future__ import annotations

import logging
from collections import Counter as TallyCounter
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from fastapi import FastAPI

from sessionlens import config

logger = logging.getLogger("sessionlens.observability")


@dataclass
class _Metric:
    name: str
    kind: str  # "counter" | "histogram"
    unit: str
    description: str
    labels: tuple[str, ...]
    otel: Any | None = None
    prom: Any | None = None

    def emit(self, amount: float, **labels: str) -> None:
        values = {key: _label(labels.get(key)) for key in self.labels}
        if self.otel is not None:
            if self.kind == "counter":
                self.otel.add(amount, values)
            else:
                self.otel.record(amount, values)
        if self.prom is not None:
            bound = self.prom.labels(**values)
            if self.kind == "counter":
                bound.inc(amount)
            else:
                bound.observe(amount)


_METRICS: dict[str, _Metric] = {
    metric.name: metric
    for metric in (
        _Metric(
            "sessionlens_events_total", "counter", "1",
            "Canonical events produced by session readers", ("provider", "event_type"),
        ),
        _Metric(
            "sessionlens_read_latency_ms", "histogram", "ms",
            "Latency of incremental reader polls", ("provider",),
        ),
        _Metric(
            "sessionlens_parser_failures_total", "counter", "1",
            "Malformed native records skipped by parsers", ("parser",),
        ),
        _Metric(
            "sessionlens_truncations_total", "counter", "1",
            "Reader resets caused by source truncation", ("provider",),
        ),
    )
}


@dataclass
class _TelemetryState:
    initialized: bool = False
    enabled: bool = False
    tracer: Any | None = None
    providers: list[Any] = field(default_factory=list)
    instrumentor: Any | None = None


_state = _TelemetryState()


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip().rstrip("/")
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/v1"):
        endpoint = endpoint[: -len("/v1")]
    return f"{endpoint}{signal_path}"


def _label(value: str | None) -> str:
    return (value or "").strip() or "unknown"


def _start_otlp(service_name: str) -> bool:
    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return False

    resource = Resource.create({"service.name": service_name, "service.namespace": "sessionlens"})

    tracer_provider = TracerProvider(resource=resource)
    span_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=span_endpoint or None)))
    trace.set_tracer_provider(tracer_provider)

    metric_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=metric_endpoint or None))
    meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(meter_provider)

    meter = metrics.get_meter("sessionlens")
    for metric in _METRICS.values():
        create = meter.create_counter if metric.kind == "counter" else meter.create_histogram
        metric.otel = create(metric.name, unit=metric.unit, description=metric.description)

    _state.tracer = trace.get_tracer("sessionlens")
    _state.providers = [meter_provider, tracer_provider]
    _state.instrumentor = FastAPIInstrumentor()
    return True


def _start_prometheus(port: int) -> None:
    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(port)
        for metric in _METRICS.values():
            factory = Counter if metric.kind == "counter" else Histogram
            metric.prom = factory(metric.name, metric.description, list(metric.labels))
        logger.info("Prometheus fallback metrics server listening on port %s", port)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Prometheus fallback not started: %s", exc)
        for metric in _METRICS.values():
            metric.prom = None


def initialize(app: FastAPI | None = None) -> None:
    if _state.initialized:
        if _state.enabled and app and _state.instrumentor:
            _state.instrumentor.instrument_app(app)
        return
    _state.initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (SESSIONLENS_OTEL_ENABLED=false)")
        return

    service_name = config.OTEL_SERVICE_NAME or "sessionlens"
    if not _start_otlp(service_name):
        return
    _state.enabled = True
    if app:
        _state.instrumentor.instrument_app(app)
    if config.PROM_PORT > 0:
        _start_prometheus(config.PROM_PORT)

    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)


def shutdown(app: FastAPI | None = None) -> None:
    if not _state.initialized:
        return
    if app and _state.instrumentor:
        try:
            _state.instrumentor.uninstrument_app(app)
        except Exception:
            logger.debug("FastAPI uninstrumentation failed", exc_info=True)
    for provider in _state.providers:
        try:
            provider.shutdown()
        except Exception:
            logger.debug("Telemetry provider shutdown failed", exc_info=True)
    for metric in _METRICS.values():
        metric.otel = None
    _state.enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _state.enabled or _state.tracer is None:
        yield None
        return
    with _state.tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def record_events(provider: str, event_types: list[str], duration_ms: float) -> None:
    """Count canonical events emitted by one reader poll."""
    for event_type, count in TallyCounter(event_types).items():
        _METRICS["sessionlens_events_total"].emit(count, provider=provider, event_type=event_type)
    _METRICS["sessionlens_read_latency_ms"].emit(max(0.0, float(duration_ms)), provider=provider)


def record_parser_failure(parser: str) -> None:
    _METRICS["sessionlens_parser_failures_total"].emit(1, parser=parser)


def record_truncation(provider: str) -> None:
    _METRICS["sessionlens_truncations_total"].emit(1, provider=provider)
