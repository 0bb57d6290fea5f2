"""OpenTelemetry instrumentation helpers."""

from trapcheck.telemetry.tracing import get_tracer, start_span

__all__ = ["get_tracer", "start_span"]
