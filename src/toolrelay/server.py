"""FastAPI surface for the relay and the connection registry."""

import argparse
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from toolrelay.config import Settings
from toolrelay.errors import NotConnectedError
from toolrelay.provider import ModelProvider, OpenAIProvider
from toolrelay.registry import ConnectionRegistry
from toolrelay.relay import ChatRelay, ChatRequest
from toolrelay.sse import SSE_HEADERS, sse_generator

logger = logging.getLogger(__name__)


class ConnectBody(BaseModel):
    serverId: str | None = None
    config: dict[str, Any] | None = None


class ServerBody(BaseModel):
    serverId: str | None = None


class ToolCallBody(BaseModel):
    serverId: str | None = None
    name: str | None = None
    arguments: dict[str, Any] | None = None


class PromptGetBody(BaseModel):
    serverId: str | None = None
    name: str | None = None
    arguments: dict[str, str] | None = None


class ResourceReadBody(BaseModel):
    serverId: str | None = None
    uri: str | None = None


def _dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


NOT_CONNECTED = "Server is not connected."


def create_app(
    settings: Settings | None = None,
    registry: ConnectionRegistry | None = None,
    provider: ModelProvider | None = None,
) -> FastAPI:
    """Factory: build the relay FastAPI app.

    The registry lives for the lifetime of the app; every connection it
    still holds is closed at shutdown. A provider is built from
    *settings* unless one is passed in.
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        reg = registry or ConnectionRegistry(client_name=settings.client_name)
        model_provider = provider
        if model_provider is None and settings.api_key:
            model_provider = OpenAIProvider(
                api_key=settings.api_key,
                model=settings.model,
                base_url=settings.base_url,
                max_tool_rounds=settings.max_tool_rounds,
            )
        app.state.registry = reg
        app.state.relay = ChatRelay(
            reg, model_provider, api_key_configured=bool(settings.api_key),
        )
        yield
        logger.info("Shutting down: disconnecting all servers")
        await reg.disconnect_all()

    app = FastAPI(title="toolrelay", lifespan=lifespan)

    def _registry(request: Request) -> ConnectionRegistry:
        return request.app.state.registry

    # -- Chat --

    def _event_stream(request: Request, chat: ChatRequest) -> StreamingResponse:
        relay: ChatRelay = request.app.state.relay
        return StreamingResponse(
            sse_generator(relay.stream(chat)),
            media_type="text/event-stream; charset=utf-8",
            headers=SSE_HEADERS,
        )

    @app.post("/api/chat/stream")
    async def chat_stream(request: Request, chat: ChatRequest):
        return _event_stream(request, chat)

    @app.get("/api/chat/stream")
    async def chat_stream_get(request: Request, q: str = ""):
        return _event_stream(request, ChatRequest(prompt=q.strip()))

    # -- Connections --

    @app.post("/api/mcp/connect")
    async def connect(request: Request, body: ConnectBody):
        if not body.serverId or not body.config:
            return JSONResponse(
                {"success": False, "error": "serverId and config are required."},
                status_code=400,
            )
        try:
            await _registry(request).connect(body.serverId, body.config)
        except Exception as e:
            return JSONResponse(
                {"success": False, "error": str(e) or "Connection failed."},
                status_code=500,
            )
        return {"success": True}

    @app.post("/api/mcp/disconnect")
    async def disconnect(request: Request, body: ServerBody):
        if not body.serverId:
            return JSONResponse(
                {"success": False, "error": "serverId is required."},
                status_code=400,
            )
        await _registry(request).disconnect(body.serverId)
        return {"success": True}

    @app.get("/api/mcp/status")
    async def status(request: Request, serverId: str | None = None):
        reg = _registry(request)
        if not serverId:
            return {
                "statuses": {
                    sid: _dump(state) for sid, state in reg.all_statuses().items()
                },
            }
        return _dump(reg.status(serverId))

    # -- Tools, prompts, resources --

    @app.get("/api/mcp/tools")
    async def tools(request: Request, serverId: str | None = None):
        if not serverId:
            return _error("serverId is required.", 400)
        reg = _registry(request)
        client = reg.active_client(serverId)
        if client is None:
            return _error(NOT_CONNECTED, 400)
        try:
            result = await client.list_tools()
        except Exception as e:
            return _error(str(e), 500)
        return {"tools": [_dump(t) for t in result.tools]}

    @app.post("/api/mcp/tools/call")
    async def call_tool(request: Request, body: ToolCallBody):
        if not body.serverId or not body.name:
            return _error("serverId and name are required.", 400)
        try:
            result = await _registry(request).call_tool(
                body.serverId, body.name, body.arguments or {},
            )
        except NotConnectedError:
            return _error(NOT_CONNECTED, 400)
        except Exception as e:
            return _error(str(e), 500)
        response: dict[str, Any] = {"content": [_dump(c) for c in result.content]}
        if result.isError:
            response["isError"] = True
        return response

    @app.get("/api/mcp/prompts")
    async def prompts(request: Request, serverId: str | None = None):
        if not serverId:
            return _error("serverId is required.", 400)
        try:
            items = await _registry(request).list_prompts(serverId)
        except NotConnectedError:
            return _error(NOT_CONNECTED, 400)
        except Exception as e:
            return _error(str(e), 500)
        return {"prompts": [_dump(p) for p in items]}

    @app.post("/api/mcp/prompts/get")
    async def get_prompt(request: Request, body: PromptGetBody):
        if not body.serverId or not body.name:
            return _error("serverId and name are required.", 400)
        try:
            result = await _registry(request).get_prompt(
                body.serverId, body.name, body.arguments,
            )
        except NotConnectedError:
            return _error(NOT_CONNECTED, 400)
        except Exception as e:
            return _error(str(e), 500)
        response: dict[str, Any] = {"messages": [_dump(m) for m in result.messages]}
        if result.description is not None:
            response["description"] = result.description
        return response

    @app.get("/api/mcp/resources")
    async def resources(request: Request, serverId: str | None = None):
        if not serverId:
            return _error("serverId is required.", 400)
        try:
            items = await _registry(request).list_resources(serverId)
        except NotConnectedError:
            return _error(NOT_CONNECTED, 400)
        except Exception as e:
            return _error(str(e), 500)
        return {"resources": [_dump(r) for r in items]}

    @app.post("/api/mcp/resources/read")
    async def read_resource(request: Request, body: ResourceReadBody):
        if not body.serverId or not body.uri:
            return _error("serverId and uri are required.", 400)
        try:
            result = await _registry(request).read_resource(body.serverId, body.uri)
        except NotConnectedError:
            return _error(NOT_CONNECTED, 400)
        except Exception as e:
            return _error(str(e), 500)
        return {"contents": [_dump(c) for c in result.contents]}

    return app


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Chat relay for protocol-server tools",
    )
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument(
        "--log-level", default="info",
        choices=["debug", "info", "warning", "error"],
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format='%(asctime)s:%(name)s:%(levelname)s:%(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )

    import uvicorn

    uvicorn.run(create_app(), host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
