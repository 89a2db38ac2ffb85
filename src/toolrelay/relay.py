import asyncio
import json
import logging
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from toolrelay.catalog import ToolIndex, build_tool_index
from toolrelay.errors import ProtocolError
from toolrelay.events import (
    DoneEvent,
    ErrorEvent,
    StreamEvent,
    TextEvent,
    ToolCallEndEvent,
    ToolCallStartEvent,
)
from toolrelay.instrumentation import record_error, turn_span
from toolrelay.provider import ModelProvider, ToolSet
from toolrelay.registry import ConnectionRegistry
from toolrelay.streaming import chunk_text
from toolrelay.trace import FunctionCallEntry, FunctionResponseEntry, Generation, TraceEntry

logger = logging.getLogger(__name__)

ALREADY_HANDLED = "already handled"
HANDLED_AUTOMATICALLY = "handled automatically"
NO_RESPONSE = "no response recorded"


class ChatRequest(BaseModel):
    """One user prompt and the servers whose tools it may use."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: str = ""
    enable_mcp_tools: bool = Field(default=False, alias="enableMcpTools")
    server_ids: list[str] = Field(default_factory=list, alias="serverIds")
    server_names: dict[str, str] = Field(default_factory=dict, alias="serverNames")


class TurnState(Enum):
    IDLE = "idle"
    DISPATCHED = "dispatched"
    REPLAYING_TRACE = "replaying_trace"
    STREAMING_TEXT = "streaming_text"
    DONE = "done"


class ToolCallStatus(Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class ToolCallRecord:
    """A tool call observed in the trace, scoped to one turn."""

    id: int
    name: str
    server_id: str
    args: dict[str, Any] = field(default_factory=dict)
    status: ToolCallStatus = ToolCallStatus.RUNNING
    result: str | None = None

    def finish(self, result: str, is_error: bool) -> None:
        if self.status is not ToolCallStatus.RUNNING:
            raise ProtocolError(f"Tool call {self.id} ({self.name}) already finished")
        self.status = ToolCallStatus.ERROR if is_error else ToolCallStatus.SUCCESS
        self.result = result


def response_text(payload: dict[str, Any]) -> tuple[str, bool]:
    """Result text of a response payload and whether it is an error."""
    if "error" in payload:
        return _as_text(payload["error"]), True
    if "result" in payload:
        return _as_text(payload["result"]), False
    return json.dumps(payload, ensure_ascii=False, default=str), False


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else str(value)


class TraceReplayer:
    """Turns call-trace entries into tool lifecycle events.

    Feed entries in trace order; each call opens a running
    :class:`ToolCallRecord` and each response closes the most recent
    running record with the same tool name. A response with nothing to
    close still yields an end event, marked as already handled.
    """

    def __init__(self, index: ToolIndex):
        self.index = index
        self.records: list[ToolCallRecord] = []

    def feed(self, entry: TraceEntry) -> list[StreamEvent]:
        if isinstance(entry, FunctionCallEntry):
            return self._on_call(entry)
        if isinstance(entry, FunctionResponseEntry):
            return self._on_response(entry)
        raise ProtocolError(f"Unknown trace entry: {entry!r}")

    def _on_call(self, entry: FunctionCallEntry) -> list[StreamEvent]:
        if not entry.name:
            logger.warning("Skipping trace call without a tool name")
            return []
        record = ToolCallRecord(
            id=len(self.records) + 1,
            name=entry.name,
            server_id=self.index.resolve(entry.name),
            args=dict(entry.args or {}),
        )
        self.records.append(record)
        return [ToolCallStartEvent(
            name=record.name, server_id=record.server_id, args=record.args,
        )]

    def _on_response(self, entry: FunctionResponseEntry) -> list[StreamEvent]:
        if not entry.name:
            logger.warning("Skipping trace response without a tool name")
            return []
        text, is_error = response_text(entry.response or {})
        record = self._latest_running(entry.name)
        if record is None:
            logger.info(f"Orphan response for {entry.name}")
            return [ToolCallEndEvent(
                name=entry.name,
                server_id=self.index.resolve(entry.name),
                result=f"{ALREADY_HANDLED}: {text}",
                is_error=is_error,
            )]
        record.finish(text, is_error)
        return [ToolCallEndEvent(
            name=record.name, server_id=record.server_id,
            result=text, is_error=is_error,
        )]

    def _latest_running(self, name: str) -> ToolCallRecord | None:
        for record in reversed(self.records):
            if record.name == name and record.status is ToolCallStatus.RUNNING:
                return record
        return None

    def finish(self) -> list[StreamEvent]:
        """Close calls the trace never answered, so every start has an end."""
        events: list[StreamEvent] = []
        for record in self.records:
            if record.status is ToolCallStatus.RUNNING:
                record.finish(NO_RESPONSE, is_error=True)
                events.append(ToolCallEndEvent(
                    name=record.name, server_id=record.server_id,
                    result=NO_RESPONSE, is_error=True,
                ))
        return events


def replay_trace(trace: Iterable[TraceEntry], index: ToolIndex) -> list[StreamEvent]:
    """Ordered tool lifecycle events for a whole trace."""
    replayer = TraceReplayer(index)
    events: list[StreamEvent] = []
    for entry in trace:
        events.extend(replayer.feed(entry))
    events.extend(replayer.finish())
    return events


def replay_function_calls(
    calls: Iterable[FunctionCallEntry], index: ToolIndex,
) -> list[StreamEvent]:
    """Degraded replay when only the names of completed calls are known."""
    return [
        ToolCallEndEvent(
            name=call.name,
            server_id=index.resolve(call.name),
            result=HANDLED_AUTOMATICALLY,
            is_error=False,
        )
        for call in calls
        if call.name
    ]


def error_code_for(exc: BaseException) -> str:
    status = getattr(exc, "status", None)
    if status is None:
        status = getattr(exc, "status_code", None)
    if status is None:
        status = 500
    if status in (401, 403):
        return "UNAUTHORIZED"
    if status == 429:
        return "RATE_LIMIT"
    if status >= 500:
        return "UPSTREAM_ERROR"
    return "INTERNAL_ERROR"


class Turn:
    """One prompt through to its ``done`` event.

    ``state`` advances ``idle -> dispatched -> replaying_trace ->
    streaming_text -> done``; an error jumps straight to ``done``.
    """

    def __init__(self, relay: "ChatRelay", request: ChatRequest):
        self.relay = relay
        self.request = request
        self.state = TurnState.IDLE
        self._replayer: TraceReplayer | None = None

    async def events(self) -> AsyncIterator[StreamEvent]:
        try:
            if not self.relay.api_key_configured:
                yield ErrorEvent(code="NO_API_KEY", message="No model API key is configured on the server.")
            elif not self.request.prompt.strip():
                yield ErrorEvent(code="NO_PROMPT", message="A prompt is required.")
            else:
                async for event in self._run():
                    yield event
        except asyncio.CancelledError:
            logger.info("Chat turn cancelled")
            self.state = TurnState.DONE
            raise
        except Exception as e:
            code = error_code_for(e)
            logger.error(f"Chat turn failed ({code}): {e!r}")
            if self._replayer is not None:
                for event in self._replayer.finish():
                    yield event
            yield ErrorEvent(code=code, message=str(e) or "An unknown error occurred.")
        self.state = TurnState.DONE
        yield DoneEvent()

    async def _run(self) -> AsyncIterator[StreamEvent]:
        registry = self.relay.registry
        index = ToolIndex()
        if self.request.enable_mcp_tools and self.request.server_ids:
            index = await build_tool_index(registry, self.request.server_ids)
        tool_set = ToolSet(registry, index)

        server_ids = self.request.server_ids if self.request.enable_mcp_tools else []
        async with turn_span(self.relay.provider.model, server_ids, len(tool_set)) as span:
            self.state = TurnState.DISPATCHED
            logger.info(f"Dispatching prompt with {len(tool_set)} tool(s)")
            try:
                generation = await self.relay.provider.generate(self.request.prompt, tool_set)
            except Exception as e:
                record_error(span, e)
                raise

        self.state = TurnState.REPLAYING_TRACE
        for event in self._replay(generation, index):
            yield event

        self.state = TurnState.STREAMING_TEXT
        for delta in chunk_text(generation.text):
            yield TextEvent(delta=delta)

    def _replay(self, generation: Generation, index: ToolIndex) -> Iterable[StreamEvent]:
        if generation.trace is not None:
            self._replayer = TraceReplayer(index)
            for entry in generation.trace:
                yield from self._replayer.feed(entry)
            yield from self._replayer.finish()
        elif generation.function_calls:
            logger.warning("No call trace available; reporting calls without arguments or results")
            yield from replay_function_calls(generation.function_calls, index)


class ChatRelay:
    """Relays chat turns between a client and the model capability.

    Each turn dispatches the prompt to the provider exactly once,
    replays the call trace it returns as tool lifecycle events, then
    streams the answer text. Every turn ends with a ``done`` event
    unless the caller cancels it. Cancelling a turn never touches the
    registry's connections.

    Args:
        registry: Shared connection registry.
        provider: Model capability.
        api_key_configured: ``False`` makes every turn fail with
            ``NO_API_KEY``.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        provider: ModelProvider | None,
        api_key_configured: bool = True,
    ):
        self.registry = registry
        self.provider = provider
        self.api_key_configured = api_key_configured and provider is not None

    def start_turn(self, request: ChatRequest) -> Turn:
        return Turn(self, request)

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        async for event in self.start_turn(request).events():
            yield event
