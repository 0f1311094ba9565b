from __future__ import annotations

from opentelemetry import trace
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from jobboard_api.core.telemetry import (
    TelemetryRuntime,
    build_tracer_provider,
    configure_logging,
    install_log_correlation,
    shutdown_telemetry,
)
from jobboard_workers.core.config import Settings


def configure_worker_logging() -> None:
    configure_logging()


def setup_worker_telemetry(settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)
    if settings.otel_log_correlation:
        install_log_correlation()

    provider = build_tracer_provider(
        service_name=settings.otel_service_name,
        environment=settings.environment,
        sample_ratio=settings.otel_trace_sample_ratio,
        endpoint=settings.otel_exporter_otlp_endpoint,
        headers=settings.otel_exporter_otlp_headers,
    )
    trace.set_tracer_provider(provider)
    HTTPXClientInstrumentor().instrument(tracer_provider=provider)
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_worker_telemetry(runtime: TelemetryRuntime) -> None:
    shutdown_telemetry(runtime)
