"""Tracing tests: spans carry turn, tool-call and connection details.

A MagicMock tracer stands in for the SDK; ``opentelemetry-api`` is a
test dependency so ``SpanKind`` and ``StatusCode`` are the real enums.
"""

import logging
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from opentelemetry.trace import NoOpTracerProvider, SpanKind, StatusCode

import toolrelay.instrumentation as inst
from toolrelay.catalog import ToolIndex
from toolrelay.errors import TransportError, UpstreamError
from toolrelay.instrumentation import (
    completion_span,
    connect_span,
    record_completion,
    record_connection_failure,
    record_error,
    record_tool_payload,
    tool_span,
    turn_span,
)
from toolrelay.provider import ToolSet
from toolrelay.relay import ChatRelay, ChatRequest
from toolrelay.trace import Generation

from tests.conftest import ScriptedProvider, make_tool, stdio, text_result


@pytest.fixture(autouse=True)
def _reset_tracer():
    inst._tracer = None
    yield
    inst._tracer = None


@pytest.fixture
def tracer():
    """Installs a mock tracer; ``tracer.spans`` lists every span started."""
    mock_tracer = MagicMock()
    mock_tracer.spans = []

    def start(name, kind=None, attributes=None):
        span = MagicMock()
        span.name, span.kind, span.attributes = name, kind, dict(attributes or {})
        mock_tracer.spans.append(span)
        cm = MagicMock()
        cm.__enter__.return_value = span
        cm.__exit__.return_value = False
        return cm

    mock_tracer.start_as_current_span.side_effect = start
    inst._tracer = mock_tracer
    return mock_tracer


def attributes_set(span):
    return {c.args[0]: c.args[1] for c in span.set_attribute.call_args_list}


# -------------------------------------------------------------------
# instrument()
# -------------------------------------------------------------------


class TestInstrument:
    def test_requires_otel(self):
        with patch("importlib.util.find_spec", return_value=None):
            with pytest.raises(ImportError, match=r"toolrelay\[otel\]"):
                inst.instrument()
        assert inst._tracer is None

    def test_uses_given_tracer_provider(self):
        provider = MagicMock()
        provider.get_tracer.return_value = MagicMock()

        inst.instrument(tracer_name="relay-backend", tracer_provider=provider)

        assert inst._tracer is provider.get_tracer.return_value
        assert provider.get_tracer.call_args.args[0] == "relay-backend"

    def test_noop_provider_is_reported(self, caplog):
        with caplog.at_level(logging.INFO, logger="toolrelay.instrumentation"):
            inst.instrument(tracer_provider=NoOpTracerProvider())

        assert inst._tracer is not None
        assert "spans will be discarded" in caplog.text

    def test_uninstrument_turns_spans_off(self, tracer):
        inst.uninstrument()
        assert inst._tracer is None


# -------------------------------------------------------------------
# Span helpers
# -------------------------------------------------------------------


class TestSpans:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "span_cm",
        [
            lambda: turn_span("m", ["s1"], 1),
            lambda: completion_span("m", 0),
            lambda: tool_span("t", "s1", 1),
            lambda: connect_span("s1", "stdio"),
        ],
        ids=["turn", "completion", "tool", "connect"],
    )
    async def test_no_span_without_tracer(self, span_cm):
        async with span_cm() as span:
            assert span is None

    @pytest.mark.asyncio
    async def test_errors_pass_through_untraced_spans(self):
        with pytest.raises(ValueError):
            async with tool_span("t", "s1", 1):
                raise ValueError("tool blew up")

    @pytest.mark.asyncio
    async def test_turn_span_names_offered_servers(self, tracer):
        async with turn_span("gpt-4o", ("search", "files"), 3):
            pass

        (span,) = tracer.spans
        assert span.name == "invoke_agent toolrelay"
        assert span.kind is SpanKind.INTERNAL
        assert span.attributes["toolrelay.turn.server_ids"] == ["search", "files"]
        assert span.attributes["toolrelay.turn.tool_count"] == 3

    @pytest.mark.asyncio
    async def test_completion_span_is_a_client_span_per_round(self, tracer):
        async with completion_span("gpt-4o", 2):
            pass

        (span,) = tracer.spans
        assert span.name == "chat gpt-4o"
        assert span.kind is SpanKind.CLIENT
        assert span.attributes["toolrelay.tool_round"] == 2

    @pytest.mark.asyncio
    async def test_tool_span_carries_call_identity(self, tracer):
        async with tool_span("lookup", "search-server", 4, call_id="call_abc"):
            pass
        async with tool_span("lookup", "search-server", 5):
            pass

        with_id, without_id = tracer.spans
        assert with_id.attributes["toolrelay.tool.call_number"] == 4
        assert with_id.attributes["gen_ai.tool.call.id"] == "call_abc"
        assert with_id.attributes["toolrelay.server.id"] == "search-server"
        assert "gen_ai.tool.call.id" not in without_id.attributes

    @pytest.mark.asyncio
    async def test_connect_span(self, tracer):
        async with connect_span("s1", "streamable-http"):
            pass

        (span,) = tracer.spans
        assert span.kind is SpanKind.CLIENT
        assert span.attributes == {
            "toolrelay.server.id": "s1",
            "toolrelay.transport": "streamable-http",
        }


# -------------------------------------------------------------------
# Recorders
# -------------------------------------------------------------------


def completion(tool_calls=None, usage=None, finish_reason="stop"):
    message = SimpleNamespace(content="hi", tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason=finish_reason)],
        usage=usage,
        model="gpt-4o-2024-08-06",
    )


class TestRecorders:
    def test_completion_counts_requested_tool_calls(self):
        span = MagicMock()
        usage = SimpleNamespace(prompt_tokens=100, completion_tokens=50)

        record_completion(span, completion([object(), object()], usage, "tool_calls"))

        assert attributes_set(span) == {
            "gen_ai.usage.input_tokens": 100,
            "gen_ai.usage.output_tokens": 50,
            "gen_ai.response.model": "gpt-4o-2024-08-06",
            "gen_ai.response.finish_reasons": ["tool_calls"],
            "toolrelay.tool_calls.requested": 2,
        }

    def test_completion_without_usage(self):
        span = MagicMock()
        record_completion(span, completion(usage=SimpleNamespace()))
        attrs = attributes_set(span)
        assert "gen_ai.usage.input_tokens" not in attrs
        assert attrs["toolrelay.tool_calls.requested"] == 0

    @pytest.mark.parametrize(
        "payload,is_error",
        [({"result": "ok"}, False), ({"error": ""}, True)],
    )
    def test_tool_payload(self, payload, is_error):
        span = MagicMock()
        record_tool_payload(span, payload)
        span.set_attribute.assert_called_once_with("toolrelay.tool.is_error", is_error)

    def test_upstream_error_carries_status(self):
        span = MagicMock()
        exc = UpstreamError("slow down", status=429)

        record_error(span, exc)

        span.set_status.assert_called_once_with(StatusCode.ERROR, "slow down")
        span.record_exception.assert_called_once_with(exc)
        assert attributes_set(span) == {
            "error.type": "UpstreamError",
            "http.response.status_code": 429,
        }

    def test_connection_failure_uses_registry_detail(self):
        span = MagicMock()
        exc = ExceptionGroup("unhandled errors in a TaskGroup", [OSError("refused")])

        record_connection_failure(span, exc, "refused")

        span.set_status.assert_called_once_with(StatusCode.ERROR, "refused")
        assert attributes_set(span)["toolrelay.connection.error"] == "refused"

    @pytest.mark.parametrize(
        "recorder,args",
        [
            (record_completion, (completion(),)),
            (record_tool_payload, ({"result": "x"},)),
            (record_error, (RuntimeError("boom"),)),
            (record_connection_failure, (RuntimeError("boom"), "boom")),
        ],
    )
    def test_recorders_ignore_missing_span(self, recorder, args):
        recorder(None, *args)


# -------------------------------------------------------------------
# Spans from real operations
# -------------------------------------------------------------------


class TestTracedOperations:
    @pytest.mark.asyncio
    async def test_tool_calls_are_numbered_per_turn(self, tracer, registry, session_factory):
        session = session_factory.session("server", tools=[make_tool("search")])
        session.results["search"] = text_result("denied", is_error=True)
        await registry.connect("s1", stdio("server"))
        index = ToolIndex()
        index.add("s1", make_tool("search"))
        tool_set = ToolSet(registry, index)

        await tool_set.call("search", {}, call_id="call_1")
        await tool_set.call("mystery", {})

        first, second = [s for s in tracer.spans if s.name.startswith("execute_tool")]
        assert first.attributes["toolrelay.tool.call_number"] == 1
        assert first.attributes["gen_ai.tool.call.id"] == "call_1"
        assert attributes_set(first)["toolrelay.tool.is_error"] is True
        assert second.attributes["toolrelay.tool.call_number"] == 2
        assert second.attributes["toolrelay.server.id"] == "unknown"

    @pytest.mark.asyncio
    async def test_failed_connect_span_has_error_detail(self, tracer, registry, session_factory):
        session_factory.failures["broken"] = ExceptionGroup("x", [OSError("connection refused")])

        with pytest.raises(TransportError):
            await registry.connect("s1", stdio("broken"))

        (span,) = tracer.spans
        assert span.name == "connect s1"
        span.set_status.assert_called_once_with(StatusCode.ERROR, "connection refused")
        assert attributes_set(span)["toolrelay.connection.error"] == "connection refused"

    @pytest.mark.asyncio
    async def test_turn_span_reports_tools_offered(self, tracer, registry, session_factory):
        session_factory.session("server", tools=[make_tool("search"), make_tool("fetch")])
        await registry.connect("s1", stdio("server"))
        relay = ChatRelay(registry, ScriptedProvider(Generation(text="ok", trace=[])))

        events = [e async for e in relay.stream(
            ChatRequest(prompt="hi", enable_mcp_tools=True, server_ids=["s1"]),
        )]

        assert events[-1].type == "done"
        turn = next(s for s in tracer.spans if s.name == "invoke_agent toolrelay")
        assert turn.attributes["toolrelay.turn.server_ids"] == ["s1"]
        assert turn.attributes["toolrelay.turn.tool_count"] == 2
