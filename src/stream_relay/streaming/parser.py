"""Generation record parsing for NDJSON model streams.

Each frame is expected to hold one JSON object shaped like::

    {"response": "...", "done": false}
    {"done": true, "done_reason": "stop", "prompt_eval_count": 3, "eval_count": 2}

Blank frames are keep-alive noise.  Frames that do not parse are logged and
skipped; they never end the sequence.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterable, AsyncIterator

from stream_relay.errors import MalformedFrame
from stream_relay.types import (
    STOP_REASON_STOP,
    Finish,
    GenerationEvent,
    TextDelta,
    TokenUsage,
)

_logger = logging.getLogger(__name__)


class GenerationEventParser:
    """Map framed JSON generation records to ``TextDelta`` / ``Finish``.

    The field names default to Ollama's ``/api/generate`` shape but can be
    pointed at any backend exposing a text field and a completion flag.
    """

    def __init__(
        self,
        *,
        text_field: str = "response",
        done_field: str = "done",
        reason_field: str = "done_reason",
        prompt_count_field: str = "prompt_eval_count",
        completion_count_field: str = "eval_count",
    ) -> None:
        self._text_field = text_field
        self._done_field = done_field
        self._reason_field = reason_field
        self._prompt_count_field = prompt_count_field
        self._completion_count_field = completion_count_field
        self._finished = False
        self.skipped = 0

    @property
    def finished(self) -> bool:
        """Whether a ``Finish`` event has been produced."""
        return self._finished

    def events_for(self, frame: str) -> list[GenerationEvent]:
        """Return the events carried by a single frame.

        A record with both text and ``done`` yields the delta first.  Once
        ``Finish`` has been produced every further frame yields nothing.
        """
        if self._finished or not frame.strip():
            return []

        try:
            record = self._decode(frame)
        except MalformedFrame as e:
            self.skipped += 1
            _logger.warning("Skipping generation record: %s", e)
            return []

        events: list[GenerationEvent] = []
        text = record.get(self._text_field)
        if isinstance(text, str) and text:
            events.append(TextDelta(text=text))

        if record.get(self._done_field) is True:
            events.append(self._finish_from(record))
            self._finished = True
        return events

    async def events(self, frames: AsyncIterable[str]) -> AsyncIterator[GenerationEvent]:
        """Lazily parse *frames*; the sequence ends right after ``Finish``."""
        async for frame in frames:
            for event in self.events_for(frame):
                yield event
            if self._finished:
                return

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _decode(frame: str) -> dict[str, Any]:
        try:
            record = json.loads(frame)
        except json.JSONDecodeError as e:
            raise MalformedFrame(frame, f"invalid JSON: {e.msg}") from e
        if not isinstance(record, dict):
            raise MalformedFrame(frame, f"expected object, got {type(record).__name__}")
        return record

    def _finish_from(self, record: dict[str, Any]) -> Finish:
        reason = record.get(self._reason_field)
        if not isinstance(reason, str) or not reason:
            reason = STOP_REASON_STOP
        usage = TokenUsage.from_counts(
            record.get(self._prompt_count_field),
            record.get(self._completion_count_field),
        )
        return Finish(reason=reason, usage=usage)
