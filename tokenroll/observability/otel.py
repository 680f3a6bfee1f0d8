"""OpenTelemetry + Prometheus fallback wiring for the usage engine."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from tokenroll import config

logger = logging.getLogger("tokenroll.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_file_scan_counter: Any | None = None
_file_scan_latency_hist: Any | None = None
_malformed_counter: Any | None = None
_tokens_counter: Any | None = None
_cost_counter: Any | None = None
_cycle_counter: Any | None = None
_cycle_duration_hist: Any | None = None

_prom_enabled = False
_prom_file_scan_counter: Any | None = None
_prom_file_scan_latency_hist: Any | None = None
_prom_malformed_counter: Any | None = None
_prom_tokens_counter: Any | None = None
_prom_cost_counter: Any | None = None
_prom_cycle_counter: Any | None = None
_prom_cycle_duration_hist: Any | None = None


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/"):
        endpoint = endpoint[:-1]
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def _label(value: str) -> str:
    return (value or "").strip() or "unknown"


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _file_scan_counter, _file_scan_latency_hist, _malformed_counter
    global _tokens_counter, _cost_counter, _cycle_counter, _cycle_duration_hist
    global _prom_enabled
    global _prom_file_scan_counter, _prom_file_scan_latency_hist, _prom_malformed_counter
    global _prom_tokens_counter, _prom_cost_counter, _prom_cycle_counter, _prom_cycle_duration_hist

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (TOKENROLL_OTEL_ENABLED=false)")
        return

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
        return

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    service_name = config.OTEL_SERVICE_NAME or "tokenroll"

    resource = Resource.create({"service.name": service_name, "service.namespace": "tokenroll"})

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("tokenroll")

    metric_reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=metrics_endpoint or None))
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("tokenroll")

    _file_scan_counter = meter.create_counter(
        "tokenroll_file_scans_total",
        unit="1",
        description="Per-file scan outcomes",
    )
    _file_scan_latency_hist = meter.create_histogram(
        "tokenroll_file_scan_latency_ms",
        unit="ms",
        description="Latency of read, parse and commit for one log file",
    )
    _malformed_counter = meter.create_counter(
        "tokenroll_malformed_lines_total",
        unit="1",
        description="Log lines skipped because they failed normalization",
    )
    _tokens_counter = meter.create_counter(
        "tokenroll_tokens_total",
        unit="1",
        description="Committed token totals by provider and model",
    )
    _cost_counter = meter.create_counter(
        "tokenroll_cost_usd_total",
        unit="usd",
        description="Committed estimated cost by provider and model",
    )
    _cycle_counter = meter.create_counter(
        "tokenroll_scan_cycles_total",
        unit="1",
        description="Scan cycles by trigger and status",
    )
    _cycle_duration_hist = meter.create_histogram(
        "tokenroll_scan_cycle_duration_ms",
        unit="ms",
        description="Wall-clock duration of scan cycles",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = tracer
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        try:
            from prometheus_client import Counter, Histogram, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_enabled = True
            _prom_file_scan_counter = Counter(
                "tokenroll_file_scans_total",
                "Per-file scan outcomes",
                ["provider", "result"],
            )
            _prom_file_scan_latency_hist = Histogram(
                "tokenroll_file_scan_latency_ms",
                "Latency of read, parse and commit for one log file",
                ["provider", "result"],
            )
            _prom_malformed_counter = Counter(
                "tokenroll_malformed_lines_total",
                "Log lines skipped because they failed normalization",
                ["provider"],
            )
            _prom_tokens_counter = Counter(
                "tokenroll_tokens_total",
                "Committed token totals by provider and model",
                ["provider", "model", "direction"],
            )
            _prom_cost_counter = Counter(
                "tokenroll_cost_usd_total",
                "Committed estimated cost by provider and model",
                ["provider", "model"],
            )
            _prom_cycle_counter = Counter(
                "tokenroll_scan_cycles_total",
                "Scan cycles by trigger and status",
                ["trigger", "status"],
            )
            _prom_cycle_duration_hist = Histogram(
                "tokenroll_scan_cycle_duration_ms",
                "Wall-clock duration of scan cycles",
                ["trigger", "status"],
            )
            logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Prometheus fallback not started: %s", exc)
            _prom_enabled = False

    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    try:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.uninstrument_app(app)
    except Exception as exc:  # noqa: BLE001
        logger.debug("FastAPI uninstrument failed: %s", exc)
    for provider in (_meter_provider, _trace_provider):
        if provider is None:
            continue
        try:
            provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Telemetry provider shutdown failed: %s", exc)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def record_file_scan(provider: str, result: str, duration_ms: float) -> None:
    labels = {"provider": _label(provider), "result": _label(result)}
    duration = max(0.0, float(duration_ms))
    if _enabled and _file_scan_counter is not None:
        _file_scan_counter.add(1, labels)
    if _enabled and _file_scan_latency_hist is not None:
        _file_scan_latency_hist.record(duration, labels)
    if _prom_enabled and _prom_file_scan_counter is not None:
        _prom_file_scan_counter.labels(**labels).inc()
    if _prom_enabled and _prom_file_scan_latency_hist is not None:
        _prom_file_scan_latency_hist.labels(**labels).observe(duration)


def record_malformed_lines(provider: str, count: int) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = {"provider": _label(provider)}
    if _enabled and _malformed_counter is not None:
        _malformed_counter.add(safe_count, labels)
    if _prom_enabled and _prom_malformed_counter is not None:
        _prom_malformed_counter.labels(**labels).inc(safe_count)


def record_tokens(
    provider: str,
    model: str,
    token_input: int,
    token_output: int,
    cost_usd: float,
) -> None:
    labels_base = {"provider": _label(provider), "model": _label(model)}
    in_tokens = max(0, int(token_input))
    out_tokens = max(0, int(token_output))
    if _enabled and _tokens_counter is not None:
        if in_tokens > 0:
            _tokens_counter.add(in_tokens, {**labels_base, "direction": "input"})
        if out_tokens > 0:
            _tokens_counter.add(out_tokens, {**labels_base, "direction": "output"})
    if _enabled and _cost_counter is not None and cost_usd > 0:
        _cost_counter.add(float(cost_usd), labels_base)

    if _prom_enabled and _prom_tokens_counter is not None:
        if in_tokens > 0:
            _prom_tokens_counter.labels(**{**labels_base, "direction": "input"}).inc(in_tokens)
        if out_tokens > 0:
            _prom_tokens_counter.labels(**{**labels_base, "direction": "output"}).inc(out_tokens)
    if _prom_enabled and _prom_cost_counter is not None and cost_usd > 0:
        _prom_cost_counter.labels(**labels_base).inc(float(cost_usd))


def record_cycle(trigger: str, status: str, duration_ms: float) -> None:
    labels = {"trigger": _label(trigger), "status": _label(status)}
    duration = max(0.0, float(duration_ms))
    if _enabled and _cycle_counter is not None:
        _cycle_counter.add(1, labels)
    if _enabled and _cycle_duration_hist is not None:
        _cycle_duration_hist.record(duration, labels)
    if _prom_enabled and _prom_cycle_counter is not None:
        _prom_cycle_counter.labels(**labels).inc()
    if _prom_enabled and _prom_cycle_duration_hist is not None:
        _prom_cycle_duration_hist.labels(**labels).observe(duration)
