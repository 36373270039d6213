"""Line framing for newline-delimited streams.

Chunks arrive at arbitrary boundaries.  The decoder carries the incomplete
tail of the last chunk until its terminator shows up, so the frames it emits
are identical no matter how the stream was split.
"""

from __future__ import annotations

import logging
from typing import AsyncIterable, AsyncIterator

_logger = logging.getLogger(__name__)

LINE_TERMINATOR = "\n"


class LineFrameDecoder:
    """Split a text stream into lines across chunk boundaries.

    Unterminated data left in the buffer at end of stream is discarded (and
    logged); upstreams terminate every record.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._exhausted = False

    @property
    def pending(self) -> str:
        """Carry-over buffer: the incomplete trailing segment."""
        return self._buffer

    def feed(self, chunk: str) -> list[str]:
        """Append *chunk* and return every line it completes."""
        if not chunk:
            return []
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(LINE_TERMINATOR)
        return [line[:-1] if line.endswith("\r") else line for line in lines]

    def finish(self) -> None:
        """Signal end of stream; drop whatever is left in the buffer."""
        if self._buffer:
            _logger.warning(
                "Discarding %d chars of unterminated trailing data", len(self._buffer),
            )
            self._buffer = ""

    async def frames(self, chunks: AsyncIterable[str]) -> AsyncIterator[str]:
        """Lazily yield frames from an async chunk source.

        Not restartable: a decoder instance serves one stream.
        """
        if self._exhausted:
            raise RuntimeError("LineFrameDecoder already consumed a stream")
        self._exhausted = True
        async for chunk in chunks:
            for line in self.feed(chunk):
                yield line
        self.finish()
