"""Typed events emitted during a chat turn."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


@dataclass
class StreamEvent:
    """Base for all stream events."""

    type: ClassVar[str] = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type}


@dataclass
class TextEvent(StreamEvent):
    """Appendable fragment of the final answer."""

    type: ClassVar[str] = "text"
    delta: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "delta": self.delta}


@dataclass
class ToolCallStartEvent(StreamEvent):
    type: ClassVar[str] = "tool_call_start"
    name: str = ""
    server_id: str = ""
    args: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "serverId": self.server_id,
            "args": self.args,
        }


@dataclass
class ToolCallEndEvent(StreamEvent):
    type: ClassVar[str] = "tool_call_end"
    name: str = ""
    server_id: str = ""
    result: str = ""
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "serverId": self.server_id,
            "result": self.result,
            "isError": self.is_error,
        }


@dataclass
class ErrorEvent(StreamEvent):
    """Fatal turn-level error. Always followed by :class:`DoneEvent`.

    ``code`` values: ``NO_API_KEY``, ``NO_PROMPT``, ``UNAUTHORIZED``,
    ``RATE_LIMIT``, ``UPSTREAM_ERROR``, ``INTERNAL_ERROR``.
    """

    type: ClassVar[str] = "error"
    code: str = ""
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "code": self.code, "message": self.message}


@dataclass
class DoneEvent(StreamEvent):
    """Final event of every turn."""

    type: ClassVar[str] = "done"
