"""Chat completion orchestrator: one logical response from many segments.

    provider.stream -> engine -> consumer
         ^                |
         +-- continue <---+ (Finish reason == "length")

When a segment is cut off by the token limit, the partial answer and a
continuation directive are appended to the conversation and the same
provider is invoked again; the new stream is spliced onto the output.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Sequence

import httpx

from stream_relay.config import MAX_RESPONSE_SEGMENTS
from stream_relay.errors import MaxSegmentsExceeded, ModelUnavailable
from stream_relay.events.bus import EventBus
from stream_relay.llm.source import ModelProvider, Source
from stream_relay.prompts import CONTINUE_PROMPT
from stream_relay.streaming.sse import transcode
from stream_relay.streaming.switchable import DEFAULT_QUEUE_SIZE, StreamSwitchEngine
from stream_relay.types import (
    STOP_REASON_LENGTH,
    STOP_REASON_STOP,
    ChatMessage,
    EventType,
    Finish,
    GenerationEvent,
    SegmentOutcome,
    TextDelta,
    TokenUsage,
)

_logger = logging.getLogger(__name__)


class ChatCompletionOrchestrator:
    """Start chat responses with automatic continuation.

    Parameters
    ----------
    primary:
        Provider used for every response.
    fallback:
        Provider tried if *primary* cannot open the first segment.
    event_bus:
        Receives lifecycle and ``message.complete`` telemetry (optional).
    max_segments:
        Maximum number of continuations per response.
    continue_prompt:
        User turn appended before each continuation.
    queue_size:
        Backpressure bound of each response's output queue.
    """

    def __init__(
        self,
        primary: ModelProvider,
        fallback: ModelProvider | None = None,
        *,
        event_bus: EventBus | None = None,
        max_segments: int = MAX_RESPONSE_SEGMENTS,
        continue_prompt: str = CONTINUE_PROMPT,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.event_bus = event_bus
        self.max_segments = max_segments
        self.continue_prompt = continue_prompt
        self.queue_size = queue_size

    async def start(self, messages: Sequence[ChatMessage]) -> ChatResponse:
        """Open the first segment and return the response handle.

        Raises ``ModelUnavailable`` (or the underlying ``httpx.HTTPError``)
        if neither provider can start; nothing has been streamed yet then.
        """
        response = ChatResponse(self, list(messages))
        await response._begin()
        return response

    async def aclose(self) -> None:
        await self.primary.aclose()
        if self.fallback is not None:
            await self.fallback.aclose()
        if self.event_bus is not None:
            await self.event_bus.drain()

    def _publish(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event_type, data)


class ChatResponse:
    """A single logical response, possibly spanning several segments."""

    def __init__(self, orchestrator: ChatCompletionOrchestrator, messages: list[ChatMessage]) -> None:
        self._orchestrator = orchestrator
        self.messages = messages
        self.provider: ModelProvider | None = None
        self.segments = 0
        self.usage = TokenUsage()
        self.finish_reason: str | None = None
        self._engine = StreamSwitchEngine(
            self._on_segment_complete, queue_size=orchestrator.queue_size,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def provider_name(self) -> str:
        return self.provider.name if self.provider is not None else ""

    @property
    def switch_count(self) -> int:
        return self._engine.switch_count

    @property
    def engine(self) -> StreamSwitchEngine:
        return self._engine

    # ------------------------------------------------------------------
    # Consumer API
    # ------------------------------------------------------------------

    def events(self) -> AsyncIterator[GenerationEvent]:
        """Text deltas across all segments, then one aggregated ``Finish``."""
        return self._engine.events()

    def sse(self) -> AsyncIterator[bytes]:
        """The response encoded as ``data: <json>\\n\\n`` records."""
        return transcode(self._engine.events())

    async def text(self) -> str:
        """Consume the whole response and return its text."""
        parts: list[str] = []
        async for event in self._engine.events():
            if isinstance(event, TextDelta):
                parts.append(event.text)
        return "".join(parts)

    async def aclose(self) -> None:
        """Abandon the response and release the active model stream."""
        await self._engine.abort()

    # ------------------------------------------------------------------
    # Segment lifecycle
    # ------------------------------------------------------------------

    async def _begin(self) -> None:
        orch = self._orchestrator
        orch._publish(EventType.RESPONSE_STARTED, {"provider": orch.primary.name})
        provider = orch.primary
        try:
            source = await provider.stream(self.messages)
        except (ModelUnavailable, httpx.HTTPError) as e:
            if orch.fallback is None:
                orch._publish(EventType.RESPONSE_ERROR, {"error": str(e), "segment": 0})
                raise
            _logger.warning(
                "Provider %s unavailable (%s); falling back to %s",
                provider.name, e, orch.fallback.name,
            )
            orch._publish(
                EventType.RESPONSE_FALLBACK,
                {"from": provider.name, "to": orch.fallback.name, "error": str(e)},
            )
            provider = orch.fallback
            try:
                source = await provider.stream(self.messages)
            except (ModelUnavailable, httpx.HTTPError) as e2:
                orch._publish(EventType.RESPONSE_ERROR, {"error": str(e2), "segment": 0})
                raise
        self.provider = provider
        await self._attach(source)

    async def _attach(self, source: Source) -> None:
        self.segments += 1
        _logger.info("Segment %d started on %s", self.segments, self.provider_name)
        self._orchestrator._publish(
            EventType.SEGMENT_STARTED,
            {"segment": self.segments, "provider": self.provider_name},
        )
        await self._engine.switch_source(source)

    async def _on_segment_complete(self, outcome: SegmentOutcome) -> None:
        orch = self._orchestrator
        self.usage = self.usage + outcome.usage
        reason = outcome.reason or STOP_REASON_STOP
        orch._publish(
            EventType.SEGMENT_FINISHED,
            {"segment": self.segments, "finishReason": reason, "usage": outcome.usage.to_dict()},
        )

        if reason != STOP_REASON_LENGTH:
            self.finish_reason = reason
            _logger.info(
                "Response complete after %d segment(s): %s, %d tokens",
                self.segments, reason, self.usage.total_tokens,
            )
            orch._publish(
                EventType.MESSAGE_COMPLETE,
                {
                    "event": "message_complete",
                    "properties": {"usage": self.usage.to_dict(), "finishReason": reason},
                },
            )
            await self._engine.close(trailer=Finish(reason=reason, usage=self.usage))
            return

        if self._engine.switch_count >= orch.max_segments:
            orch._publish(
                EventType.RESPONSE_ERROR,
                {"error": "max_segments", "segment": self.segments},
            )
            raise MaxSegmentsExceeded(orch.max_segments)

        switches_left = orch.max_segments - self._engine.switch_count
        _logger.info(
            "Reached max token limit: continuing message (%d switch(es) left)", switches_left,
        )
        self.messages.append(ChatMessage("assistant", outcome.text))
        self.messages.append(ChatMessage("user", orch.continue_prompt))
        orch._publish(
            EventType.SEGMENT_CONTINUED,
            {"segment": self.segments, "switchesLeft": switches_left},
        )
        source = await self.provider.stream(self.messages)
        await self._attach(source)
