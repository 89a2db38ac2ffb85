"""Call traces returned alongside generated text.

A model capability that calls tools on its own reports what it did as
an ordered list of :class:`FunctionCallEntry` and
:class:`FunctionResponseEntry` items. The relay only observes a trace;
it never re-executes the calls in it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from toolrelay.errors import ProtocolError


@dataclass
class FunctionCallEntry:
    """The model asked for *name* to be called with *args*."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass
class FunctionResponseEntry:
    """The outcome of a call to *name*.

    ``response`` carries either a ``result`` or an ``error`` key.
    """

    name: str
    response: dict[str, Any] = field(default_factory=dict)


TraceEntry = FunctionCallEntry | FunctionResponseEntry


@dataclass
class Generation:
    """Result of one model dispatch.

    Args:
        text: Final generated text.
        trace: Ordered call trace, or ``None`` when the capability
            produced none.
        function_calls: Calls the capability reports as completed.
            Only consulted when ``trace`` is ``None``.
    """

    text: str = ""
    trace: list[TraceEntry] | None = None
    function_calls: list[FunctionCallEntry] = field(default_factory=list)


def parse_trace(raw: list[dict]) -> list[TraceEntry]:
    """Build trace entries from their JSON form.

    Each item holds either ``{"functionCall": {"name", "args"}}`` or
    ``{"functionResponse": {"name", "response"}}``.

    Raises:
        ProtocolError: If an item is not a mapping, holds neither key,
            or carries arguments/response that are not mappings.
    """
    entries: list[TraceEntry] = []
    for position, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ProtocolError(f"Trace entry {position} is not an object: {item!r}")
        if "functionCall" in item:
            call = item["functionCall"] or {}
            args = call.get("args") or {}
            if not isinstance(args, dict):
                raise ProtocolError(f"Trace entry {position} has non-object args")
            entries.append(FunctionCallEntry(name=call.get("name") or "", args=args))
        elif "functionResponse" in item:
            response = item["functionResponse"] or {}
            payload = response.get("response") or {}
            if not isinstance(payload, dict):
                raise ProtocolError(f"Trace entry {position} has non-object response")
            entries.append(FunctionResponseEntry(name=response.get("name") or "", response=payload))
        else:
            raise ProtocolError(f"Trace entry {position} is neither a call nor a response")
    return entries
