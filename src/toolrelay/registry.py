import asyncio
import functools
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from mcp import ClientSession
from mcp.types import (
    CallToolResult,
    GetPromptResult,
    Prompt,
    ReadResourceResult,
    Resource,
    Tool,
)

from toolrelay.connection import (
    DEFAULT_CLIENT_NAME,
    Connection,
    ServerConfig,
    SessionFactory,
    open_session,
)
from toolrelay.errors import NotConnectedError, RelayError, TransportError
from toolrelay.instrumentation import connect_span, record_connection_failure
from toolrelay.types import ConnectionStatus, ServerRuntimeState

logger = logging.getLogger(__name__)


@dataclass
class ServerTool:
    """A tool descriptor together with the connection that exposes it."""

    server_id: str
    tool: Tool
    server_name: str = ""


class ConnectionRegistry:
    """Keyed map of protocol-server connections.

    The registry owns the lifecycle of every :class:`Connection` it
    holds and offers one invocation surface regardless of transport.
    Construct one per process, share it by reference, and call
    :meth:`disconnect_all` at shutdown (or use it as an async context
    manager).

    Operations on the same identifier are serialized by a per-identifier
    lock, so a disconnect issued while a connect is in flight runs after
    it and wins. Operations on different identifiers never wait on each
    other. Reads (:meth:`status`, :meth:`active_client`) take no lock.

    Args:
        session_factory: Overrides how sessions are opened; defaults to
            the SDK transports.
        client_name: Client identity announced to protocol servers.
    """

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        client_name: str = DEFAULT_CLIENT_NAME,
    ):
        self._session_factory = session_factory or functools.partial(
            open_session, client_name=client_name,
        )
        self._connections: dict[str, Connection] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    async def __aenter__(self) -> "ConnectionRegistry":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect_all()

    @asynccontextmanager
    async def _serialized(self, server_id: str):
        # a lock lives only while someone holds or waits on it
        lock = self._locks.setdefault(server_id, asyncio.Lock())
        self._lock_users[server_id] = self._lock_users.get(server_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[server_id] -= 1
            if not self._lock_users[server_id]:
                del self._lock_users[server_id]
                del self._locks[server_id]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, server_id: str, config: ServerConfig | dict) -> None:
        """Replace any existing connection for *server_id* with a new one.

        The failed connection stays resident in ``error`` so its detail
        can still be read through :meth:`status`.

        Raises:
            TransportError: If the descriptor is unrecognized or the
                session cannot be established.
        """
        async with self._serialized(server_id):
            await self._teardown(server_id)

            connection = Connection(server_id, config, self._session_factory)
            self._connections[server_id] = connection
            logger.info(f"Connecting {server_id} ({connection.transport_type})")

            async with connect_span(server_id, connection.transport_type) as span:
                try:
                    await connection.open()
                except asyncio.CancelledError:
                    if self._connections.get(server_id) is connection:
                        del self._connections[server_id]
                    raise
                except Exception as e:
                    record_connection_failure(span, e, connection.error)
                    logger.warning(f"Failed to connect {server_id}: {connection.error}")
                    if isinstance(e, RelayError):
                        raise
                    raise TransportError(connection.error) from e

    async def disconnect(self, server_id: str) -> None:
        """Close and forget *server_id*. Absent identifiers are a no-op."""
        async with self._serialized(server_id):
            await self._teardown(server_id)

    async def disconnect_all(self) -> None:
        server_ids = list(self._connections)
        await asyncio.gather(*(self.disconnect(s) for s in server_ids))

    async def _teardown(self, server_id: str) -> None:
        connection = self._connections.get(server_id)
        if connection is None:
            return
        try:
            await connection.close()
        except Exception as e:
            logger.warning(f"Error while closing {server_id}, removing anyway: {e!r}")
        finally:
            self._connections.pop(server_id, None)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def status(self, server_id: str) -> ServerRuntimeState:
        connection = self._connections.get(server_id)
        if connection is None:
            return ServerRuntimeState(status=ConnectionStatus.DISCONNECTED)
        return connection.runtime_state()

    def all_statuses(self) -> dict[str, ServerRuntimeState]:
        """Snapshot of every resident connection, for resynchronizing a client."""
        return {
            server_id: connection.runtime_state()
            for server_id, connection in list(self._connections.items())
        }

    def active_client(self, server_id: str) -> ClientSession | None:
        """The session for *server_id* if and only if it is ``connected``."""
        connection = self._connections.get(server_id)
        if connection is None:
            return None
        return connection.session

    def is_connected(self, server_id: str) -> bool:
        return self.active_client(server_id) is not None

    def connected_server_ids(self) -> list[str]:
        return [
            server_id
            for server_id, connection in list(self._connections.items())
            if connection.status is ConnectionStatus.CONNECTED
        ]

    # ------------------------------------------------------------------
    # Invocation surface
    # ------------------------------------------------------------------

    def _require_client(self, server_id: str) -> ClientSession:
        client = self.active_client(server_id)
        if client is None:
            raise NotConnectedError(server_id)
        return client

    async def list_tools(self, server_id: str) -> list[Tool]:
        """Tools advertised by *server_id*.

        Returns an empty list when the server has no active client or
        the fetch fails.
        """
        client = self.active_client(server_id)
        if client is None:
            return []
        try:
            result = await client.list_tools()
        except Exception as e:
            logger.warning(f"Could not list tools for {server_id}: {e!r}")
            return []
        return list(result.tools)

    async def list_all_tools(
        self, server_names: dict[str, str] | None = None,
    ) -> list[ServerTool]:
        server_names = server_names or {}
        all_tools = []
        for server_id in self.connected_server_ids():
            for tool in await self.list_tools(server_id):
                all_tools.append(ServerTool(
                    server_id=server_id,
                    tool=tool,
                    server_name=server_names.get(server_id, server_id),
                ))
        return all_tools

    async def call_tool(
        self, server_id: str, name: str, arguments: dict[str, Any] | None = None,
    ) -> CallToolResult:
        """Invoke *name* on *server_id*.

        Arguments are passed through unvalidated; the protocol server
        reports invalid ones itself.

        Raises:
            NotConnectedError: If *server_id* has no active client.
        """
        client = self._require_client(server_id)
        logger.info(f"Calling {server_id}/{name}")
        return await client.call_tool(name, arguments=arguments or {})

    async def list_prompts(self, server_id: str) -> list[Prompt]:
        client = self._require_client(server_id)
        result = await client.list_prompts()
        return list(result.prompts)

    async def get_prompt(
        self, server_id: str, name: str, arguments: dict[str, str] | None = None,
    ) -> GetPromptResult:
        client = self._require_client(server_id)
        return await client.get_prompt(name, arguments=arguments)

    async def list_resources(self, server_id: str) -> list[Resource]:
        client = self._require_client(server_id)
        result = await client.list_resources()
        return list(result.resources)

    async def read_resource(self, server_id: str, uri: str) -> ReadResourceResult:
        client = self._require_client(server_id)
        return await client.read_resource(uri)
