"""Distributed tracing helpers.

Thin wrapper over the OpenTelemetry tracing API.  Without an SDK configured
by the application the API hands out non-recording spans, so instrumented
code costs next to nothing.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional

from opentelemetry import trace

_TRACER_NAME = "trapcheck"


def get_tracer() -> trace.Tracer:
    """Return the trapcheck tracer."""
    return trace.get_tracer(_TRACER_NAME)


@contextmanager
def start_span(
    name: str,
    attributes: Optional[Dict[str, Any]] = None,
) -> Generator[trace.Span, None, None]:
    """Context manager that starts a span as the current span."""
    tracer = get_tracer()
    with tracer.start_as_current_span(name, attributes=attributes or {}) as span:
        yield span
