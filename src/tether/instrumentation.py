"""Optional OpenTelemetry instrumentation for tether.

Call ``tether.instrumentation.instrument()`` once at startup to trace
stream attempts.  Requires ``opentelemetry-api``; the client works
identically without it.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "tether") -> None:
    """Enable OpenTelemetry tracing for stream attempts.

    Call once at startup, after configuring your TracerProvider.
    Requires ``opentelemetry-api``: ``pip install tether[otel]``

    Example::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        trace.set_tracer_provider(TracerProvider())

        from tether.instrumentation import instrument
        instrument()

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install tether[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured; spans will be "
            "discarded. Set up a TracerProvider to export "
            "traces."
        )
    else:
        logger.info("Tether instrumentation enabled")


def uninstrument() -> None:
    """Disable OpenTelemetry tracing."""
    global _tracer
    _tracer = None


@asynccontextmanager
async def stream_span(operation: str, conversation_id: str | None):
    """Wrap one stream attempt (``send`` or ``reconnect``) in a span."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"stream.{operation}",
        kind=SpanKind.CLIENT,
        attributes={
            "tether.operation": operation,
            "tether.conversation.id": conversation_id or "",
        },
    ) as span:
        yield span


def record_session(span, session_id: str | None, events: int) -> None:
    """Set the server session id and applied event count on a span."""
    if span is None:
        return
    if session_id:
        span.set_attribute("tether.session.id", session_id)
    span.set_attribute("tether.events", events)


def record_error(span, kind: str, message: str) -> None:
    """Mark a span as failed with a stream error kind.

    No-ops when *span* is ``None`` (tracing disabled).
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, message)
    span.set_attribute("error.type", kind)
