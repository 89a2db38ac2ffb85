"""Optional OpenTelemetry tracing for chat turns and protocol servers.

Spans produced once :func:`instrument` has been called:

* ``invoke_agent toolrelay``: one chat turn, tagged with the servers
  whose tools were offered and how many tools that came to.
* ``chat <model>``: one model round-trip inside the tool loop, tagged
  with its round number and how many tool calls it asked for.
* ``execute_tool <name>``: one tool call routed to a protocol server.
* ``connect <server id>``: session establishment, carrying the same
  failure detail that :meth:`ConnectionRegistry.status` reports.

Requires ``opentelemetry-api``. Without :func:`instrument` every span
helper yields ``None`` and the recorders do nothing.
"""

import importlib.util
import logging
from collections.abc import Iterable
from contextlib import asynccontextmanager
from typing import Any

logger = logging.getLogger(__name__)

SERVER_ID = "toolrelay.server.id"

_tracer = None


def instrument(*, tracer_name: str = "toolrelay", tracer_provider=None) -> None:
    """Start emitting spans for chat turns, model rounds, tool calls
    and server connections.

    Example::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        trace.set_tracer_provider(TracerProvider())

        import toolrelay
        toolrelay.instrument()

    Args:
        tracer_name: Instrumentation scope name for the tracer.
        tracer_provider: Provider to draw the tracer from instead of the
            globally configured one.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "Tracing needs opentelemetry-api: pip install toolrelay[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name, tracer_provider=tracer_provider)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info("No TracerProvider configured; toolrelay spans will be discarded")
    else:
        logger.info(f"Tracing chat turns and server connections as {tracer_name!r}")


def uninstrument() -> None:
    global _tracer
    _tracer = None


@asynccontextmanager
async def _span(name: str, attributes: dict[str, Any], client: bool = False):
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    kind = SpanKind.CLIENT if client else SpanKind.INTERNAL
    with _tracer.start_as_current_span(name, kind=kind, attributes=attributes) as span:
        yield span


def turn_span(model: str, server_ids: Iterable[str], tool_count: int):
    """Span for one chat turn, from dispatch to the model's final answer."""
    return _span("invoke_agent toolrelay", {
        "gen_ai.operation.name": "invoke_agent",
        "gen_ai.request.model": model,
        "toolrelay.turn.server_ids": list(server_ids),
        "toolrelay.turn.tool_count": tool_count,
    })


def completion_span(model: str, round_number: int):
    """Span for one model round-trip; round 0 is the initial prompt."""
    return _span(f"chat {model}", {
        "gen_ai.operation.name": "chat",
        "gen_ai.provider.name": "openai",
        "gen_ai.request.model": model,
        "toolrelay.tool_round": round_number,
    }, client=True)


def tool_span(tool_name: str, server_id: str, call_number: int, call_id: str | None = None):
    """Span for a tool call, numbered in the order the turn made them.

    *call_id* is the model's own identifier for the call, when it has one.
    """
    attributes = {
        "gen_ai.operation.name": "execute_tool",
        "gen_ai.tool.name": tool_name,
        "toolrelay.tool.call_number": call_number,
        SERVER_ID: server_id,
    }
    if call_id:
        attributes["gen_ai.tool.call.id"] = call_id
    return _span(f"execute_tool {tool_name}", attributes)


def connect_span(server_id: str, transport: str):
    return _span(f"connect {server_id}", {
        SERVER_ID: server_id,
        "toolrelay.transport": transport,
    }, client=True)


def record_completion(span, response) -> None:
    """Token usage, response model and requested tool calls of a
    chat-completions response."""
    if span is None:
        return
    usage = getattr(response, "usage", None)
    if usage is not None:
        for attribute, field in (
            ("gen_ai.usage.input_tokens", "prompt_tokens"),
            ("gen_ai.usage.output_tokens", "completion_tokens"),
        ):
            value = getattr(usage, field, None)
            if value is not None:
                span.set_attribute(attribute, value)
    if getattr(response, "model", None):
        span.set_attribute("gen_ai.response.model", response.model)
    if response.choices:
        choice = response.choices[0]
        finish_reason = getattr(choice, "finish_reason", None)
        if finish_reason:
            span.set_attribute("gen_ai.response.finish_reasons", [finish_reason])
        span.set_attribute(
            "toolrelay.tool_calls.requested", len(choice.message.tool_calls or []),
        )


def record_tool_payload(span, payload: dict[str, Any]) -> None:
    """Mark whether the payload handed back to the model is an error."""
    if span is None:
        return
    span.set_attribute("toolrelay.tool.is_error", "error" in payload)


def record_error(span, exception: BaseException, description: str | None = None) -> None:
    """Set ERROR status on *span* and attach *exception*.

    Upstream failures that carry an HTTP status also get
    ``http.response.status_code``.
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, description or str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)
    status = getattr(exception, "status", None)
    if status is None:
        status = getattr(exception, "status_code", None)
    if status is not None:
        span.set_attribute("http.response.status_code", status)


def record_connection_failure(span, exception: BaseException, detail: str | None) -> None:
    """Record a failed connect with the detail the registry reports for it."""
    if span is None:
        return
    record_error(span, exception, detail)
    if detail:
        span.set_attribute("toolrelay.connection.error", detail)
