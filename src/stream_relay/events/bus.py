"""Async pub/sub bus for response lifecycle and telemetry events."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from stream_relay.types import EventType, RelayEvent

_logger = logging.getLogger(__name__)

# Subscribe with "*" to receive every event
WILDCARD = "*"

Handler = Callable[[RelayEvent], Any]


class EventBus:
    """Fan ``RelayEvent``s out to sync or async handlers.

    ``emit()`` awaits all matching handlers; ``publish()`` schedules the same
    delivery as a background task so the caller never waits on (or fails
    because of) a slow telemetry sink.  Handler exceptions are logged and
    swallowed in both cases.
    """

    def __init__(self, *, max_history: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._history: list[RelayEvent] = []
        self._max_history = max_history
        self._pending: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, event_type: EventType | str, handler: Handler) -> None:
        self._handlers.setdefault(self._key(event_type), []).append(handler)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        handlers = self._handlers.get(self._key(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def emit(self, event: RelayEvent) -> None:
        """Deliver *event* to its type's handlers and wildcard handlers."""
        self._history.append(event)
        if len(self._history) > self._max_history:
            del self._history[: len(self._history) - self._max_history]

        handlers = list(self._handlers.get(self._key(event.type), []))
        handlers.extend(self._handlers.get(WILDCARD, []))
        if handlers:
            await asyncio.gather(*(self._call_handler(h, event) for h in handlers))

    def publish(self, event_type: EventType, data: dict[str, Any] | None = None) -> asyncio.Task[None]:
        """Fire-and-forget ``emit``; the task is tracked until it finishes."""
        task = asyncio.create_task(self.emit(RelayEvent(type=event_type, data=data or {})))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every in-flight ``publish()`` delivery."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    @property
    def history(self) -> list[RelayEvent]:
        return list(self._history)

    def events_of(self, event_type: EventType) -> list[RelayEvent]:
        return [e for e in self._history if e.type is event_type]

    def clear(self) -> None:
        self._handlers.clear()
        self._history.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _key(event_type: EventType | str) -> str:
        if isinstance(event_type, EventType):
            return event_type.value
        return str(event_type)

    @staticmethod
    async def _call_handler(handler: Handler, event: RelayEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "EventBus handler %s raised for event %s",
                getattr(handler, "__name__", handler),
                event.type.value,
            )
