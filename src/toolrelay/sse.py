"""Server-Sent Events adapter for streaming events."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator

from toolrelay.errors import ProtocolError
from toolrelay.events import StreamEvent

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def encode_event(event: StreamEvent) -> str:
    """Frame one event as a single SSE message."""
    data = json.dumps(event.to_dict(), ensure_ascii=False, default=str)
    return f"data: {data}\n\n"


async def sse_generator(
    event_stream: AsyncIterator[StreamEvent],
) -> AsyncIterator[str]:
    """Convert a StreamEvent async iterator into SSE-formatted strings."""
    async for event in event_stream:
        yield encode_event(event)


def decode_events(body: str) -> list[dict]:
    """Recover the typed event payloads from an SSE body.

    Raises:
        ProtocolError: If a message's data is not a JSON object with a
            ``type``.
    """
    events = []
    for message in body.split("\n\n"):
        data_lines = [
            line[len("data:"):].lstrip(" ")
            for line in message.splitlines()
            if line.startswith("data:")
        ]
        if not data_lines:
            continue
        try:
            payload = json.loads("\n".join(data_lines))
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Malformed event data: {e}") from e
        if not isinstance(payload, dict) or "type" not in payload:
            raise ProtocolError(f"Event without a type: {payload!r}")
        events.append(payload)
    return events
