"""Tests for StreamSwitchEngine."""

import asyncio

import pytest

from stream_relay.errors import AlreadyClosed, MaxSegmentsExceeded, UpstreamStreamError
from stream_relay.llm.source import IteratorSource
from stream_relay.streaming.switchable import StreamSwitchEngine
from stream_relay.types import Finish, SegmentOutcome, TextDelta, TokenUsage


def _source(*events, fail: Exception | None = None, label: str = "") -> IteratorSource:
    async def gen():
        for event in events:
            yield event
        if fail is not None:
            raise fail

    return IteratorSource(gen(), label=label)


class _Blocking:
    """Source that yields one delta and then waits forever."""

    def __init__(self):
        self.closed = False
        self.started = asyncio.Event()

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        yield TextDelta("x")
        self.started.set()
        await asyncio.Event().wait()

    async def aclose(self):
        self.closed = True


async def _drain(engine: StreamSwitchEngine) -> list:
    return [e async for e in engine.events()]


class TestSwitching:
    @pytest.mark.asyncio
    async def test_seamless_switch(self):
        second = _source(TextDelta("b1"), TextDelta("b2"), Finish("stop"), label="b")
        outcomes: list[SegmentOutcome] = []

        async def on_complete(outcome: SegmentOutcome):
            outcomes.append(outcome)
            if outcome.reason == "length":
                await engine.switch_source(second)
            else:
                await engine.close(trailer=Finish("stop"))

        engine = StreamSwitchEngine(on_complete)
        await engine.switch_source(
            _source(TextDelta("a1"), TextDelta("a2"), Finish("length"), label="a")
        )
        events = await _drain(engine)

        assert events == [
            TextDelta("a1"), TextDelta("a2"), TextDelta("b1"), TextDelta("b2"), Finish("stop"),
        ]
        assert engine.switch_count == 1
        assert engine.closed
        assert [o.text for o in outcomes] == ["a1a2", "b1b2"]
        assert second.closed

    @pytest.mark.asyncio
    async def test_first_attach_is_not_a_switch(self):
        engine = StreamSwitchEngine()
        await engine.switch_source(_source(TextDelta("a"), Finish()))
        assert engine.switch_count == 0
        events = await _drain(engine)
        assert events == [TextDelta("a"), Finish()]

    @pytest.mark.asyncio
    async def test_without_callback_closes_with_finish(self):
        usage = TokenUsage.from_counts(1, 2)
        engine = StreamSwitchEngine()
        await engine.switch_source(_source(TextDelta("a"), Finish("length", usage)))
        events = await _drain(engine)
        assert events[-1] == Finish("length", usage)
        assert engine.closed

    @pytest.mark.asyncio
    async def test_source_without_finish(self):
        seen: list[SegmentOutcome] = []

        async def on_complete(outcome: SegmentOutcome):
            seen.append(outcome)
            await engine.close()

        engine = StreamSwitchEngine(on_complete)
        await engine.switch_source(_source(TextDelta("a")))
        assert await _drain(engine) == [TextDelta("a")]
        assert seen[0].finish is None
        assert seen[0].reason is None

    @pytest.mark.asyncio
    async def test_replacing_live_source_closes_it(self):
        engine = StreamSwitchEngine()
        blocking = _Blocking()
        await engine.switch_source(blocking)
        events = engine.events()
        assert await events.__anext__() == TextDelta("x")
        await blocking.started.wait()

        await engine.switch_source(_source(TextDelta("y"), Finish()))
        assert blocking.closed
        assert engine.switch_count == 1
        rest = [e async for e in events]
        assert rest == [TextDelta("y"), Finish()]

    @pytest.mark.asyncio
    async def test_callback_that_does_nothing_closes(self):
        async def on_complete(outcome: SegmentOutcome):
            pass

        engine = StreamSwitchEngine(on_complete)
        await engine.switch_source(_source(TextDelta("a"), Finish()))
        assert await _drain(engine) == [TextDelta("a"), Finish()]


class TestClose:
    @pytest.mark.asyncio
    async def test_switch_after_close(self):
        engine = StreamSwitchEngine()
        await engine.close()
        with pytest.raises(AlreadyClosed):
            await engine.switch_source(_source(Finish()))

    @pytest.mark.asyncio
    async def test_close_twice_is_noop(self):
        engine = StreamSwitchEngine()
        await engine.close(trailer=Finish())
        await engine.close(trailer=Finish("length"))
        assert await _drain(engine) == [Finish()]

    @pytest.mark.asyncio
    async def test_close_releases_active_source(self):
        engine = StreamSwitchEngine()
        blocking = _Blocking()
        await engine.switch_source(blocking)
        await blocking.started.wait()
        await engine.close()
        assert blocking.closed
        assert engine.active_source is None


class TestErrors:
    @pytest.mark.asyncio
    async def test_source_failure_is_wrapped(self):
        boom = ConnectionResetError("reset by peer")
        engine = StreamSwitchEngine()
        await engine.switch_source(_source(TextDelta("a"), fail=boom))

        received = []
        with pytest.raises(UpstreamStreamError) as info:
            async for event in engine.events():
                received.append(event)
        assert received == [TextDelta("a")]
        assert info.value.__cause__ is boom
        assert engine.closed

    @pytest.mark.asyncio
    async def test_callback_relay_error_forwarded_as_is(self):
        async def on_complete(outcome: SegmentOutcome):
            raise MaxSegmentsExceeded(2)

        engine = StreamSwitchEngine(on_complete)
        await engine.switch_source(_source(TextDelta("a"), Finish("length")))
        with pytest.raises(MaxSegmentsExceeded):
            await _drain(engine)
        assert engine.closed

    @pytest.mark.asyncio
    async def test_single_consumer(self):
        engine = StreamSwitchEngine()
        first = engine.events()
        await engine.close()
        assert [e async for e in first] == []
        with pytest.raises(RuntimeError):
            await engine.events().__anext__()

    def test_queue_size_validated(self):
        with pytest.raises(ValueError):
            StreamSwitchEngine(queue_size=0)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_consumer_aclose_closes_source(self):
        engine = StreamSwitchEngine()
        blocking = _Blocking()
        await engine.switch_source(blocking)

        events = engine.events()
        assert await events.__anext__() == TextDelta("x")
        await events.aclose()

        assert blocking.closed
        assert engine.closed
        assert engine.active_source is None

    @pytest.mark.asyncio
    async def test_consumer_task_cancelled(self):
        engine = StreamSwitchEngine()
        blocking = _Blocking()
        await engine.switch_source(blocking)

        async def consume():
            async for _ in engine.events():
                pass

        task = asyncio.create_task(consume())
        await blocking.started.wait()
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert blocking.closed

    @pytest.mark.asyncio
    async def test_abort_without_consumer(self):
        engine = StreamSwitchEngine()
        blocking = _Blocking()
        await engine.switch_source(blocking)
        await blocking.started.wait()
        await engine.abort()
        await engine.abort()
        assert blocking.closed
        with pytest.raises(AlreadyClosed):
            await engine.switch_source(_source(Finish()))

    @pytest.mark.asyncio
    async def test_abort_ends_concurrent_reader(self):
        engine = StreamSwitchEngine()
        blocking = _Blocking()
        await engine.switch_source(blocking)
        received = []

        async def consume():
            async for event in engine.events():
                received.append(event)

        task = asyncio.create_task(consume())
        await blocking.started.wait()
        await asyncio.sleep(0)
        await engine.abort()
        done, _ = await asyncio.wait([task], timeout=2)
        assert task in done
        assert task.result() is None
        assert received == [TextDelta("x")]
        assert blocking.closed

    @pytest.mark.asyncio
    async def test_reader_after_abort_sees_end(self):
        engine = StreamSwitchEngine()
        blocking = _Blocking()
        await engine.switch_source(blocking)
        await blocking.started.wait()
        await engine.abort()
        assert [e async for e in engine.events()] == [TextDelta("x")]

    @pytest.mark.asyncio
    async def test_abort_with_full_queue_sees_end(self):
        engine = StreamSwitchEngine(queue_size=1)
        blocking = _Blocking()
        await engine.switch_source(blocking)
        await blocking.started.wait()
        await engine.abort()
        assert [e async for e in engine.events()] == []


class TestBackpressure:
    @pytest.mark.asyncio
    async def test_slow_consumer_throttles_source(self):
        produced = []

        async def gen():
            for i in range(20):
                produced.append(i)
                yield TextDelta(str(i))
            yield Finish()

        engine = StreamSwitchEngine(queue_size=2)
        await engine.switch_source(IteratorSource(gen()))
        for _ in range(10):
            await asyncio.sleep(0)
        # queue holds 2, pump holds one pending put
        assert len(produced) <= 3

        events = await _drain(engine)
        assert len(events) == 21
        assert len(produced) == 20
