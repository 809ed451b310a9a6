"""
Spans via the OpenTelemetry API.

No SDK is configured by default, in which case the tracer is a no-op.
"""
from contextlib import contextmanager
from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode

tracer = trace.get_tracer('clinic_sync')


@contextmanager
def trace_span(name: str, attributes: Optional[Dict[str, Any]] = None, kind=SpanKind.INTERNAL):
    """
    Run the block inside a span named ``name``. ``None`` attribute values
    are dropped. Exceptions mark the span as errored and propagate.
    """
    with tracer.start_as_current_span(name, kind=kind, record_exception=False) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as exc:
            span.set_attribute('error.type', type(exc).__name__)
            span.set_status(Status(StatusCode.ERROR))
            raise
