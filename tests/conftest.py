import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import pytest
from mcp.types import (
    CallToolResult,
    GetPromptResult,
    ListPromptsResult,
    ListResourcesResult,
    ListToolsResult,
    Prompt,
    PromptMessage,
    ReadResourceResult,
    Resource,
    TextContent,
    TextResourceContents,
    Tool,
)

from toolrelay.provider import ModelProvider
from toolrelay.registry import ConnectionRegistry
from toolrelay.trace import FunctionCallEntry, FunctionResponseEntry, Generation
from toolrelay.types import StdioServerConfig


def make_tool(name: str, description: str = "", properties: dict | None = None) -> Tool:
    properties = properties or {"query": {"type": "string"}}
    return Tool(
        name=name,
        description=description or f"The {name} tool.",
        inputSchema={
            "type": "object",
            "properties": properties,
            "required": list(properties),
        },
    )


def text_result(text: str, is_error: bool = False) -> CallToolResult:
    return CallToolResult(
        content=[TextContent(type="text", text=text)],
        isError=is_error,
    )


def stdio(command: str) -> dict:
    return {"type": "stdio", "command": command}


# ---------------------------------------------------------------------------
# Fake protocol session (mirrors mcp.ClientSession's surface)
# ---------------------------------------------------------------------------

class FakeSession:
    """In-memory protocol session. No subprocesses, no network."""

    def __init__(self, tools: list[Tool] | None = None):
        self.tools = tools or []
        self.results: dict[str, CallToolResult] = {}
        self.call_log: list[tuple[str, dict]] = []
        self.fail_list_tools = False

    async def list_tools(self):
        if self.fail_list_tools:
            raise RuntimeError("tools/list exploded")
        return ListToolsResult(tools=self.tools)

    async def call_tool(self, name, arguments=None):
        self.call_log.append((name, arguments))
        if name in self.results:
            return self.results[name]
        return text_result(f"{name} ok")

    async def list_prompts(self):
        return ListPromptsResult(prompts=[Prompt(name="summarize", description="Summarize text")])

    async def get_prompt(self, name, arguments=None):
        topic = (arguments or {}).get("topic", "nothing")
        return GetPromptResult(
            description=f"{name} prompt",
            messages=[PromptMessage(
                role="user",
                content=TextContent(type="text", text=f"Please {name} {topic}"),
            )],
        )

    async def list_resources(self):
        return ListResourcesResult(resources=[Resource(uri="file:///notes.txt", name="notes")])

    async def read_resource(self, uri):
        return ReadResourceResult(contents=[
            TextResourceContents(uri=uri, mimeType="text/plain", text="remember the milk"),
        ])


class FakeSessionFactory:
    """Session factory keyed by stdio command or HTTP url.

    ``failures`` makes opening a key raise, ``gates`` holds an open
    until the event is set, ``close_failures`` makes closing raise.
    """

    def __init__(self):
        self.sessions: dict[str, FakeSession] = {}
        self.failures: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.close_failures: set[str] = set()
        self.opened: list[str] = []
        self.closed: list[str] = []

    @staticmethod
    def key(config) -> str:
        if isinstance(config, StdioServerConfig):
            return config.command
        return config.url

    def session(self, key: str, tools: list[Tool] | None = None) -> FakeSession:
        session = FakeSession(tools)
        self.sessions[key] = session
        return session

    @asynccontextmanager
    async def __call__(self, config):
        key = self.key(config)
        if key in self.gates:
            await self.gates[key].wait()
        if key in self.failures:
            raise self.failures[key]
        session = self.sessions.setdefault(key, FakeSession())
        self.opened.append(key)
        try:
            yield session
        finally:
            self.closed.append(key)
            if key in self.close_failures:
                raise RuntimeError(f"{key} refused to close")


# ---------------------------------------------------------------------------
# Model capability doubles
# ---------------------------------------------------------------------------

class ScriptedProvider(ModelProvider):
    """Returns a fixed generation, or raises a fixed error. No network calls."""

    model = "scripted-model"

    def __init__(self, generation: Generation | None = None, error: Exception | None = None):
        self.generation = generation or Generation(text="Hello!", trace=[])
        self.error = error
        self.dispatches: list[dict] = []

    async def generate(self, prompt, tool_set):
        self.dispatches.append({"prompt": prompt, "tool_set": tool_set})
        if self.error is not None:
            raise self.error
        return self.generation


@dataclass
class ToolCallingProvider(ModelProvider):
    """Calls each planned tool through the tool set and records a trace."""

    plan: list[tuple[str, dict]] = field(default_factory=list)
    text: str = "All done."
    model: str = "tool-calling-model"
    dispatches: list[dict] = field(default_factory=list)

    async def generate(self, prompt, tool_set):
        self.dispatches.append({"prompt": prompt, "tool_set": tool_set})
        trace = []
        for name, args in self.plan:
            trace.append(FunctionCallEntry(name=name, args=args))
            trace.append(FunctionResponseEntry(name=name, response=await tool_set.call(name, args)))
        return Generation(text=self.text, trace=trace)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def session_factory():
    return FakeSessionFactory()


@pytest.fixture
def registry(session_factory):
    return ConnectionRegistry(session_factory=session_factory)
