from toolrelay.catalog import ToolIndex, build_tool_index
from toolrelay.config import Settings
from toolrelay.errors import (
    NotConnectedError,
    ProtocolError,
    RelayError,
    TransportError,
    UpstreamError,
)
from toolrelay.instrumentation import instrument, uninstrument
from toolrelay.provider import ModelProvider, OpenAIProvider, ToolSet
from toolrelay.registry import ConnectionRegistry
from toolrelay.relay import ChatRelay, ChatRequest, replay_trace
from toolrelay.types import (
    ConnectionStatus,
    StdioServerConfig,
    StreamableHttpServerConfig,
)

__version__ = "0.1.0"

__all__ = [
    "ChatRelay",
    "ChatRequest",
    "ConnectionRegistry",
    "ConnectionStatus",
    "ModelProvider",
    "NotConnectedError",
    "OpenAIProvider",
    "ProtocolError",
    "RelayError",
    "Settings",
    "StdioServerConfig",
    "StreamableHttpServerConfig",
    "ToolIndex",
    "ToolSet",
    "TransportError",
    "UpstreamError",
    "build_tool_index",
    "instrument",
    "replay_trace",
    "uninstrument",
]
