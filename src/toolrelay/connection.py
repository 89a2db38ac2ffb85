"""A single client session to one protocol server.

A :class:`Connection` owns exactly one transport (a child process
speaking over stdio, or a streamable-HTTP endpoint) for as long as it
is open. The transport and the protocol session are entered inside a
dedicated holder task and exited in that same task when the connection
is closed, because the SDK's transports are built on task-scoped
cancel scopes.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import Implementation

from toolrelay.errors import TransportError
from toolrelay.types import (
    ConnectionStatus,
    ServerRuntimeState,
    StdioServerConfig,
    StreamableHttpServerConfig,
    parse_server_config,
)

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_NAME = "toolrelay-mcp-client"
CLIENT_VERSION = "1.0.0"

ServerConfig = StdioServerConfig | StreamableHttpServerConfig
SessionFactory = Callable[[ServerConfig], AbstractAsyncContextManager[ClientSession]]


@asynccontextmanager
async def open_session(
    config: ServerConfig,
    client_name: str = DEFAULT_CLIENT_NAME,
) -> AsyncIterator[ClientSession]:
    """Open the transport described by *config* and an initialized session on it."""
    if isinstance(config, StdioServerConfig):
        params = StdioServerParameters(
            command=config.command,
            args=config.args,
            env=config.env,
        )
        transport = stdio_client(params)
    elif isinstance(config, StreamableHttpServerConfig):
        transport = streamablehttp_client(config.url)
    else:
        raise TransportError(f"Unsupported transport type: {type(config).__name__}")

    client_info = Implementation(name=client_name, version=CLIENT_VERSION)
    async with transport as streams:
        # stdio yields (read, write); streamable HTTP adds a session-id getter
        read_stream, write_stream = streams[0], streams[1]
        async with ClientSession(
            read_stream, write_stream, client_info=client_info,
        ) as session:
            await session.initialize()
            yield session


def _leaf_exceptions(exc: BaseException) -> Iterator[BaseException]:
    if isinstance(exc, BaseExceptionGroup):
        for inner in exc.exceptions:
            yield from _leaf_exceptions(inner)
    else:
        yield exc


def _describe(exc: BaseException) -> str:
    """Failure detail for *exc*, naming the causes inside a task-group error."""
    return "; ".join(str(e) or type(e).__name__ for e in _leaf_exceptions(exc))


class Connection:
    """One protocol-server session and its runtime state.

    State moves ``disconnected -> connecting -> connected`` on a
    successful :meth:`open`, or ``connecting -> error`` when the
    transport cannot be established. Only the connection mutates its
    own state; the registry drives it through :meth:`open` and
    :meth:`close`.

    Args:
        server_id: Caller-supplied identifier.
        config: Transport descriptor, either a validated model or a
            plain mapping with a ``type`` tag.
        session_factory: Async context manager factory yielding an
            initialized session for a validated descriptor.
    """

    def __init__(
        self,
        server_id: str,
        config: ServerConfig | dict,
        session_factory: SessionFactory = open_session,
    ):
        self.server_id = server_id
        self.config = config
        self.status = ConnectionStatus.DISCONNECTED
        self.error: str | None = None
        self._session_factory = session_factory
        self._session: ClientSession | None = None
        self._holder: asyncio.Task | None = None
        self._closing = asyncio.Event()

    @property
    def transport_type(self) -> str:
        if isinstance(self.config, dict):
            return str(self.config.get("type"))
        return self.config.type

    @property
    def session(self) -> ClientSession | None:
        """The live session, only while ``connected``."""
        if self.status is not ConnectionStatus.CONNECTED:
            return None
        return self._session

    def runtime_state(self) -> ServerRuntimeState:
        return ServerRuntimeState(status=self.status, error=self.error)

    async def open(self) -> None:
        """Establish the transport session.

        Raises:
            TransportError: If the descriptor is not a known transport.
            Exception: Whatever the transport raised while connecting;
                the connection is left in ``error`` with the detail.
        """
        self.status = ConnectionStatus.CONNECTING
        self.error = None
        try:
            self.config = parse_server_config(self.config)
        except TransportError as e:
            self._fail(e)
            raise

        ready: asyncio.Future[ClientSession] = asyncio.get_running_loop().create_future()
        self._closing.clear()
        self._holder = asyncio.create_task(
            self._hold(ready), name=f"mcp-connection:{self.server_id}",
        )
        try:
            session = await ready
        except asyncio.CancelledError:
            self._holder.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.close()
            raise
        except Exception as e:
            self._fail(e)
            await self._reap_holder()
            raise
        self._session = session
        self.status = ConnectionStatus.CONNECTED
        logger.info(f"Connected to {self.server_id} over {self.transport_type}")

    async def close(self) -> None:
        """Close the session and release the transport.

        Any exception raised while the transport shuts down propagates;
        state is reset to ``disconnected`` regardless.
        """
        self._closing.set()
        try:
            await self._reap_holder()
        finally:
            self._session = None
            self.status = ConnectionStatus.DISCONNECTED
            self.error = None
            logger.info(f"Closed connection {self.server_id}")

    async def _hold(self, ready: asyncio.Future) -> None:
        try:
            async with self._session_factory(self.config) as session:
                if ready.done():
                    return
                ready.set_result(session)
                await self._closing.wait()
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
                return
            if ready.cancelled():
                return
            if not self._closing.is_set():
                logger.warning(f"Connection {self.server_id} dropped: {_describe(e)}")
                self._session = None
                self._fail(e)
            raise

    async def _reap_holder(self) -> None:
        holder, self._holder = self._holder, None
        if holder is not None:
            await holder

    def _fail(self, exc: BaseException) -> None:
        self.status = ConnectionStatus.ERROR
        self.error = _describe(exc)
