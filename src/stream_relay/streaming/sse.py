"""Self-describing event-stream encoding.

Every event becomes one ``data: <JSON>\\n\\n`` record::

    data: {"type": "text", "data": "Hel"}
    data: {"type": "finish", "data": {"finishReason": "stop", "usage": {...}}}

The stream ends right after the ``finish`` record.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Iterable

from stream_relay.types import Finish, GenerationEvent, TextDelta, TokenUsage

_logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
RECORD_SEPARATOR = "\n\n"


def event_payload(event: GenerationEvent) -> dict[str, Any]:
    """Return the JSON-ready ``{type, data}`` object for *event*."""
    if isinstance(event, TextDelta):
        return {"type": "text", "data": event.text}
    if isinstance(event, Finish):
        return {
            "type": "finish",
            "data": {"finishReason": event.reason, "usage": event.usage.to_dict()},
        }
    raise TypeError(f"Not a generation event: {event!r}")


def encode_event(event: GenerationEvent) -> bytes:
    payload = json.dumps(event_payload(event), ensure_ascii=False)
    return f"{DATA_PREFIX}{payload}{RECORD_SEPARATOR}".encode("utf-8")


async def transcode(events: AsyncIterable[GenerationEvent]) -> AsyncIterator[bytes]:
    """Encode *events* as SSE records, ending after the first ``finish``.

    The upstream iterator is closed when the output ends or is abandoned, so
    a disconnecting consumer releases the model stream behind it.
    """
    iterator = events.__aiter__()
    try:
        async for event in iterator:
            yield encode_event(event)
            if isinstance(event, Finish):
                return
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


def decode_payload(payload: dict[str, Any]) -> GenerationEvent:
    """Inverse of ``event_payload``."""
    if not isinstance(payload, dict):
        raise ValueError(f"Event payload must be an object, got {type(payload).__name__}")
    kind = payload.get("type")
    data = payload.get("data")
    if kind == "text":
        return TextDelta(text=str(data or ""))
    if kind == "finish":
        if not isinstance(data, dict):
            data = {}
        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        return Finish(
            reason=str(data.get("finishReason") or "stop"),
            usage=TokenUsage.from_counts(usage.get("promptTokens"), usage.get("completionTokens")),
        )
    raise ValueError(f"Unknown event type: {kind!r}")


def decode_sse(lines: Iterable[str]) -> list[GenerationEvent]:
    """Parse ``data:`` lines back into events.

    Non-data lines are ignored; undecodable records are logged and skipped.
    """
    events: list[GenerationEvent] = []
    for line in lines:
        if not line.startswith(DATA_PREFIX):
            continue
        try:
            payload = json.loads(line[len(DATA_PREFIX):])
            events.append(decode_payload(payload))
        except (json.JSONDecodeError, ValueError) as e:
            _logger.warning("Ignoring undecodable event line %r: %s", line[:200], e)
    return events
