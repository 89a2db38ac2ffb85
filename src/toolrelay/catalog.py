"""Per-turn index from tool name to the connection that owns it."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from mcp.types import Tool

from toolrelay.registry import ConnectionRegistry, ServerTool

logger = logging.getLogger(__name__)

UNKNOWN_SERVER = "unknown"


class ToolIndex:
    """Reverse index of tool names to server identifiers.

    Tool names are only unique per server. When two servers expose the
    same name, the one added last owns it; :meth:`bindings` still lists
    both.
    """

    def __init__(self) -> None:
        self._owners: dict[str, str] = {}
        self._bindings: list[ServerTool] = []

    def add(self, server_id: str, tool: Tool) -> None:
        previous = self._owners.get(tool.name)
        if previous is not None and previous != server_id:
            logger.warning(
                f"Tool '{tool.name}' is exposed by both {previous} and "
                f"{server_id}; attributing it to {server_id}"
            )
        self._owners[tool.name] = server_id
        self._bindings.append(ServerTool(server_id=server_id, tool=tool))

    def resolve(self, tool_name: str) -> str:
        """Owning server id, or ``"unknown"`` when no server exposes it."""
        return self._owners.get(tool_name, UNKNOWN_SERVER)

    def owned_tools(self) -> list[ServerTool]:
        """One binding per tool name: the one calls are routed to."""
        latest: dict[str, ServerTool] = {}
        for binding in self._bindings:
            latest[binding.tool.name] = binding
        return list(latest.values())

    @property
    def bindings(self) -> list[ServerTool]:
        return list(self._bindings)

    def as_dict(self) -> dict[str, str]:
        return dict(self._owners)

    def __contains__(self, tool_name: str) -> bool:
        return tool_name in self._owners

    def __len__(self) -> int:
        return len(self._owners)


async def build_tool_index(
    registry: ConnectionRegistry, server_ids: Iterable[str],
) -> ToolIndex:
    """Index the tools of every designated server that has an active client.

    Built fresh for each turn. A server whose tool list cannot be
    fetched contributes no tools and does not fail the turn.
    """
    index = ToolIndex()
    for server_id in server_ids:
        if registry.active_client(server_id) is None:
            logger.debug(f"Skipping {server_id}: not connected")
            continue
        for tool in await registry.list_tools(server_id):
            index.add(server_id, tool)
    return index
