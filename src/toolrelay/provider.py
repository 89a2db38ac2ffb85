import json
import logging
from typing import Any

from mcp.types import CallToolResult, Tool
from openai import APIError, APIStatusError, AsyncOpenAI

from toolrelay.catalog import ToolIndex
from toolrelay.errors import ProtocolError, UpstreamError
from toolrelay.instrumentation import (
    completion_span,
    record_completion,
    record_error,
    record_tool_payload,
    tool_span,
)
from toolrelay.registry import ConnectionRegistry
from toolrelay.trace import FunctionCallEntry, FunctionResponseEntry, Generation

logger = logging.getLogger(__name__)


def function_schema(tool: Tool) -> dict:
    """Convert a protocol tool descriptor into an OpenAI function tool."""
    parameters = tool.inputSchema
    if not isinstance(parameters, dict):
        raise ProtocolError(f"Tool '{tool.name}' has a non-object input schema")
    if not isinstance(parameters.get("properties", {}), dict):
        raise ProtocolError(f"Tool '{tool.name}' has malformed properties")
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description or "",
            "parameters": {"type": "object", **parameters},
        },
    }


def format_tool_result(result: CallToolResult) -> dict[str, str]:
    """Flatten a tool result into a ``result`` or ``error`` payload."""
    parts = []
    for item in result.content:
        text = getattr(item, "text", None)
        parts.append(text if text is not None else item.model_dump_json(exclude_none=True))
    text = "\n".join(parts)
    if result.isError:
        return {"error": text}
    return {"result": text}


class ToolSet:
    """The combined tool capability handed to the model for one turn.

    Calls are routed to the server the index attributes the tool to,
    so a name exposed by two servers always runs on the one indexed
    last.
    """

    def __init__(self, registry: ConnectionRegistry, index: ToolIndex | None = None):
        self.registry = registry
        self.index = index or ToolIndex()
        self.calls_made = 0

    def __bool__(self) -> bool:
        return len(self.index) > 0

    def __len__(self) -> int:
        return len(self.index)

    def schemas(self) -> list[dict]:
        return [function_schema(b.tool) for b in self.index.owned_tools()]

    async def call(
            self, name: str, args: dict[str, Any], call_id: str | None = None,
    ) -> dict[str, str]:
        """Run *name* and return its response payload. Never raises.

        *call_id* is the model's identifier for the call, used only for
        tracing.
        """
        self.calls_made += 1
        server_id = self.index.resolve(name)
        async with tool_span(name, server_id, self.calls_made, call_id) as span:
            payload = await self._call(span, server_id, name, args)
            record_tool_payload(span, payload)
        return payload

    async def _call(self, span, server_id: str, name: str, args: dict[str, Any]) -> dict[str, str]:
        if name not in self.index:
            return {"error": f"Unknown tool: {name}"}
        try:
            result = await self.registry.call_tool(server_id, name, args)
        except Exception as e:
            record_error(span, e)
            logger.warning(f"Tool {server_id}/{name} raised: {e!r}")
            return {"error": f"Error calling {name}: {e}"}
        return format_tool_result(result)


class ModelProvider:
    """A model capability: one prompt and a tool set in, text and a
    call trace out. Implementations call tools on their own and report
    what they did in :attr:`Generation.trace`."""

    model: str = ""

    async def generate(self, prompt: str, tool_set: ToolSet) -> Generation:
        raise NotImplementedError


class OpenAIProvider(ModelProvider):
    """Chat-completions provider with automatic function calling.

    Any OpenAI-compatible endpoint works through ``base_url``.

    Args:
        api_key: API key; falls back to ``OPENAI_API_KEY`` in the SDK.
        model: Model name.
        base_url: Alternative API base URL.
        max_tool_rounds: Model round-trips that may request tools before
            the last response is accepted as final.
    """

    def __init__(
            self,
            api_key: str | None = None,
            model: str = "gpt-4o-mini",
            base_url: str | None = None,
            max_tool_rounds: int = 10,
    ):
        self.model = model
        self.max_tool_rounds = max_tool_rounds
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            max_retries=2,
            timeout=600.0,
        )

    async def generate(self, prompt: str, tool_set: ToolSet) -> Generation:
        messages: list[dict] = [{"role": "user", "content": prompt}]
        tools = tool_set.schemas() if tool_set else None
        trace = []

        round_number = 0
        while True:
            message = await self._complete(messages, tools, round_number)
            if not message.tool_calls:
                return Generation(text=message.content or "", trace=trace)

            if round_number == self.max_tool_rounds:
                logger.warning(
                    f"Stopped after {self.max_tool_rounds} tool rounds with "
                    f"{len(message.tool_calls)} call(s) unanswered"
                )
                # left unanswered in the trace so the client sees them fail
                for tc in message.tool_calls:
                    args, _ = _parse_arguments(tc.function.arguments)
                    trace.append(FunctionCallEntry(name=tc.function.name, args=args))
                return Generation(text=message.content or "", trace=trace)

            messages.append(message.model_dump(exclude_none=True))
            for tc in message.tool_calls:
                name = tc.function.name
                args, parse_error = _parse_arguments(tc.function.arguments)
                trace.append(FunctionCallEntry(name=name, args=args))
                if parse_error is not None:
                    logger.warning(f"Invalid JSON in arguments for {name}: {parse_error}")
                    payload = {"error": f"invalid arguments: {parse_error}"}
                else:
                    logger.info(f"Calling {name} with {args}")
                    payload = await tool_set.call(name, args, call_id=tc.id)
                trace.append(FunctionResponseEntry(name=name, response=payload))
                messages.append({
                    "role": "tool",
                    "tool_call_id": tc.id,
                    "content": json.dumps(payload, ensure_ascii=False),
                })
            round_number += 1

    async def _complete(self, messages: list[dict], tools: list[dict] | None, round_number: int):
        kwargs: dict[str, Any] = {"model": self.model, "messages": messages}
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        async with completion_span(self.model, round_number) as span:
            try:
                response = await self.client.chat.completions.create(**kwargs)
            except APIStatusError as e:
                record_error(span, e)
                raise UpstreamError(e.message, status=e.status_code) from e
            except APIError as e:
                record_error(span, e)
                raise UpstreamError(e.message) from e
            record_completion(span, response)
        return response.choices[0].message


def _parse_arguments(arguments: str | None) -> tuple[dict, str | None]:
    if not arguments:
        return {}, None
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as e:
        return {}, str(e)
    if not isinstance(parsed, dict):
        return {}, f"expected an object, got {type(parsed).__name__}"
    return parsed, None
