"""Source and provider protocols.

A *source* is one model invocation's output: a terminated async sequence of
``GenerationEvent`` that can be cancelled with ``aclose()``.  A *provider*
turns a conversation into a new source.  The switching engine and the
orchestrator only ever talk to these two protocols.
"""

from __future__ import annotations

import inspect
import logging
from typing import AsyncIterator, Awaitable, Callable, Protocol, Sequence, runtime_checkable

from stream_relay.types import ChatMessage, Finish, GenerationEvent, GenerationResult, TextDelta

_logger = logging.getLogger(__name__)


@runtime_checkable
class Source(Protocol):
    """Anything producing a terminated sequence of events, cancellable."""

    def __aiter__(self) -> AsyncIterator[GenerationEvent]: ...

    async def aclose(self) -> None: ...


@runtime_checkable
class ModelProvider(Protocol):
    """Something that can open a new source for a conversation."""

    name: str

    async def stream(self, messages: Sequence[ChatMessage]) -> Source: ...

    async def aclose(self) -> None: ...


class IteratorSource:
    """Adapt an async iterator of events into a ``Source``.

    *on_close* runs once when the source is closed (e.g. to release an HTTP
    response); closing also closes the wrapped iterator if it is an async
    generator.
    """

    def __init__(
        self,
        events: AsyncIterator[GenerationEvent],
        *,
        on_close: Callable[[], Awaitable[None] | None] | None = None,
        label: str = "",
    ) -> None:
        self._events = events
        self._on_close = on_close
        self._closed = False
        self.label = label

    def __aiter__(self) -> AsyncIterator[GenerationEvent]:
        return self

    async def __anext__(self) -> GenerationEvent:
        if self._closed:
            raise StopAsyncIteration
        return await self._events.__anext__()

    @property
    def closed(self) -> bool:
        return self._closed

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._events, "aclose", None)
        try:
            if aclose is not None:
                await aclose()
        finally:
            if self._on_close is not None:
                result = self._on_close()
                if inspect.isawaitable(result):
                    await result
        _logger.debug("Source %s closed", self.label or id(self))

    def __repr__(self) -> str:
        return f"IteratorSource({self.label!r}, closed={self._closed})"


async def collect(source: Source) -> GenerationResult:
    """Drain *source* into a ``GenerationResult`` and close it."""
    parts: list[str] = []
    finish: Finish | None = None
    try:
        async for event in source:
            if isinstance(event, Finish):
                finish = event
                break
            if isinstance(event, TextDelta):
                parts.append(event.text)
    finally:
        await source.aclose()
    if finish is None:
        return GenerationResult(text="".join(parts))
    return GenerationResult(
        text="".join(parts), usage=finish.usage, finish_reason=finish.reason,
    )
