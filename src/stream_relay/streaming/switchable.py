"""Switchable stream: one continuous output backed by a sequence of sources.

The engine forwards events from its single *active* source to one consumer
through a bounded queue, so a slow consumer throttles the source.  When the
active source yields ``Finish`` the engine stops reading it and asks the
completion callback what to do next: the callback either attaches a new
source with ``switch_source()`` (continuation) or ends the output with
``close()``.

State::

    idle --switch_source--> active --switch_source--> active (switch_count += 1)
    idle/active --close/abort/failure--> closed

``switch_source()`` on a closed engine raises ``AlreadyClosed``; ``close()``
on a closed engine is a no-op.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

from stream_relay.errors import AlreadyClosed, RelayError, UpstreamStreamError
from stream_relay.llm.source import Source
from stream_relay.types import Finish, GenerationEvent, SegmentOutcome, TextDelta

_logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 8

CompletionCallback = Callable[[SegmentOutcome], Awaitable[None]]

# End-of-data marker on the output queue
_EOF = object()


@dataclass
class _Failure:
    error: BaseException


class StreamSwitchEngine:
    """Expose one readable event stream fed by replaceable sources.

    Parameters
    ----------
    on_complete:
        Awaited with a ``SegmentOutcome`` each time the active source ends.
        If *None*, the engine closes itself after the first source, using
        that source's ``Finish`` as the trailing event.
    queue_size:
        Capacity of the output queue (backpressure bound).
    """

    def __init__(
        self,
        on_complete: CompletionCallback | None = None,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")
        self._on_complete = on_complete
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._active: Source | None = None
        self._released: Source | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._generation = 0
        self._switch_count = 0
        self._closed = False
        self._terminated = False
        self._consuming = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def switch_count(self) -> int:
        """Number of times an active source has been replaced."""
        return self._switch_count

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def active_source(self) -> Source | None:
        return self._active

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def switch_source(self, source: Source) -> None:
        """Make *source* the active source.

        The previous source (if any) is detached before the new one starts
        forwarding, so the two can never interleave.
        """
        if self._closed:
            raise AlreadyClosed("Cannot switch source: stream is closed")

        previous, previous_task = self._active, self._pump_task
        self._generation += 1
        generation = self._generation
        self._active = source

        if previous is not None:
            await self._detach(previous, previous_task)
            if self._closed:
                # closed while the previous source was being released
                await self._release(source)
                raise AlreadyClosed("Cannot switch source: stream is closed")
            self._switch_count += 1
            _logger.info("Switched source (switch #%d)", self._switch_count)
        else:
            _logger.debug("Attached first source")

        self._pump_task = asyncio.create_task(
            self._pump(source, generation),
            name=f"stream-relay-pump-{generation}",
        )

    async def close(self, trailer: GenerationEvent | None = None) -> None:
        """Finalize the output.

        *trailer* (typically the aggregated ``Finish``) is delivered before
        end-of-data.  Calling ``close()`` again is a no-op.
        """
        if self._closed:
            return
        self._closed = True
        active, task = self._active, self._pump_task
        self._active = None
        self._generation += 1
        if active is not None:
            await self._detach(active, task)
        self._terminated = True
        if trailer is not None:
            await self._queue.put(trailer)
        await self._queue.put(_EOF)
        _logger.debug("Stream closed after %d switch(es)", self._switch_count)

    async def abort(self) -> None:
        """Consumer went away: stop forwarding and release the active source.

        Readers still waiting on ``events()`` see end-of-data.
        """
        task = self._pump_task
        pump_running = task is not None and not task.done()
        if self._closed and self._active is None and not pump_running:
            return
        self._closed = True
        active = self._active
        self._active = None
        self._generation += 1
        if active is not None or pump_running:
            await self._detach(active, task)
        self._signal_end()

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def events(self) -> AsyncIterator[Any]:
        """Yield forwarded events until the stream closes.

        Raises the forwarded error if the stream ended with a failure.
        Leaving the iteration early aborts the engine.
        """
        if self._consuming:
            raise RuntimeError("StreamSwitchEngine output already has a consumer")
        self._consuming = True
        finished = False
        try:
            while True:
                item = await self._queue.get()
                if item is _EOF:
                    finished = True
                    return
                if isinstance(item, _Failure):
                    finished = True
                    raise item.error
                yield item
        finally:
            if not finished:
                if not self._closed:
                    _logger.info("Consumer stopped reading; aborting active source")
                await self.abort()

    def __aiter__(self) -> AsyncIterator[Any]:
        return self.events()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _pump(self, source: Source, generation: int) -> None:
        parts: list[str] = []
        finish: Finish | None = None

        try:
            async for event in source:
                if generation != self._generation:
                    return
                if isinstance(event, Finish):
                    finish = event
                    break
                if isinstance(event, TextDelta):
                    parts.append(event.text)
                await self._queue.put(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if generation == self._generation and not self._closed:
                _logger.warning("Active source failed: %s", e)
                error = UpstreamStreamError(f"Upstream source failed: {e}")
                error.__cause__ = e
                await self._fail(error)
            return

        if generation != self._generation or self._closed:
            return

        await self._release(source)
        outcome = SegmentOutcome(text="".join(parts), finish=finish)

        if self._on_complete is None:
            await self.close(trailer=finish)
            return

        try:
            await self._on_complete(outcome)
        except asyncio.CancelledError:
            raise
        except RelayError as e:
            _logger.warning("Completion callback ended the stream: %s", e)
            await self._fail(e)
            return
        except Exception as e:
            _logger.exception("Completion callback raised")
            await self._fail(e)
            return

        if not self._closed and self._active is source:
            _logger.warning("Completion callback neither switched nor closed; closing")
            await self.close(trailer=finish)

    async def _fail(self, error: BaseException) -> None:
        if self._closed:
            return
        self._closed = True
        active = self._active
        self._active = None
        self._generation += 1
        if active is not None:
            await self._release(active)
        self._terminated = True
        await self._queue.put(_Failure(error))

    def _signal_end(self) -> None:
        # Wake any reader; undelivered events are dropped to make room.
        if self._terminated:
            return
        self._terminated = True
        while self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_EOF)

    async def _detach(
        self, source: Source | None, task: asyncio.Task[None] | None,
    ) -> None:
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.wait([task])
        if source is not None:
            await self._release(source)

    async def _release(self, source: Source) -> None:
        if source is self._released:
            return
        self._released = source
        try:
            await source.aclose()
        except Exception:
            _logger.warning("Error while closing source %r", source, exc_info=True)
