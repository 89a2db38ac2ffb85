from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_serializer

from toolrelay.errors import TransportError


class ConnectionStatus(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class StdioServerConfig(BaseModel):
    """Launch the protocol server as a child process speaking over stdio."""

    type: Literal["stdio"] = "stdio"
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None


class StreamableHttpServerConfig(BaseModel):
    """Reach the protocol server through a single streamable-HTTP endpoint."""

    type: Literal["streamable-http"] = "streamable-http"
    url: str


ServerConfig = Annotated[
    Union[StdioServerConfig, StreamableHttpServerConfig],
    Field(discriminator="type"),
]

_server_config_adapter = TypeAdapter(ServerConfig)

TRANSPORT_TYPES = ("stdio", "streamable-http")


def parse_server_config(
    data: dict | StdioServerConfig | StreamableHttpServerConfig,
) -> StdioServerConfig | StreamableHttpServerConfig:
    """Validate a transport descriptor.

    Raises:
        TransportError: If ``type`` is missing or not a known transport,
            or the descriptor does not validate for its transport.
    """
    if isinstance(data, (StdioServerConfig, StreamableHttpServerConfig)):
        return data
    if not isinstance(data, dict) or data.get("type") not in TRANSPORT_TYPES:
        kind = data.get("type") if isinstance(data, dict) else type(data).__name__
        raise TransportError(f"Unsupported transport type: {kind}")
    try:
        return _server_config_adapter.validate_python(data)
    except ValidationError as e:
        raise TransportError(f"Invalid {data['type']} config: {e}") from e


class ServerRuntimeState(BaseModel):
    """Snapshot of one connection's runtime state."""

    status: ConnectionStatus
    error: str | None = None

    @field_serializer("status")
    def serialize_status(self, status: ConnectionStatus, _info) -> str:
        return status.value
