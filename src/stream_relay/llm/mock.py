"""Offline mock model.

Used when no real model is reachable, and in tests.  Streams a canned reply
word by word with a small delay so it behaves like a real token stream.
"""

from __future__ import annotations

import asyncio
import re
from typing import AsyncIterator, Sequence

from stream_relay.llm.source import IteratorSource, collect
from stream_relay.types import (
    STOP_REASON_STOP,
    ChatMessage,
    Finish,
    GenerationEvent,
    GenerationResult,
    TextDelta,
    TokenUsage,
)

DEFAULT_MOCK_RESPONSE = (
    "This is a mock response: no language model is reachable right now. "
    "Start Ollama with `ollama serve` or configure a remote API key to get real answers."
)

_PIECES = re.compile(r"\S+\s*|\s+")


def _words(text: str) -> int:
    return len(text.split())


class MockModel:
    """Deterministic streaming model.

    Parameters
    ----------
    response:
        Reply text; defaults to a notice that no model is available.
    delay:
        Seconds to sleep before each word.
    finish_reasons:
        Finish reason per invocation, in order; the last one repeats.
        ``["length", "stop"]`` makes the first reply look truncated.
    """

    name = "mock"

    def __init__(
        self,
        response: str = "",
        *,
        delay: float = 0.02,
        finish_reasons: Sequence[str] = (STOP_REASON_STOP,),
    ) -> None:
        self.response = response or DEFAULT_MOCK_RESPONSE
        self.delay = delay
        self.finish_reasons = list(finish_reasons) or [STOP_REASON_STOP]
        self.calls: list[list[ChatMessage]] = []

    async def stream(self, messages: Sequence[ChatMessage]) -> IteratorSource:
        index = len(self.calls)
        self.calls.append(list(messages))
        reason = self.finish_reasons[min(index, len(self.finish_reasons) - 1)]
        prompt_tokens = sum(_words(m.content) for m in messages)
        return IteratorSource(self._events(reason, prompt_tokens), label=f"mock#{index}")

    async def generate_once(self, prompt: str) -> GenerationResult:
        return await collect(await self.stream([ChatMessage("user", prompt)]))

    async def aclose(self) -> None:
        pass

    async def _events(self, reason: str, prompt_tokens: int) -> AsyncIterator[GenerationEvent]:
        for piece in _PIECES.findall(self.response):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield TextDelta(piece)
        yield Finish(
            reason=reason,
            usage=TokenUsage.from_counts(prompt_tokens, _words(self.response)),
        )
