"""Stream framing, parsing, switching and SSE encoding."""

from stream_relay.streaming.framing import LineFrameDecoder
from stream_relay.streaming.parser import GenerationEventParser
from stream_relay.streaming.sse import decode_sse, encode_event, transcode
from stream_relay.streaming.switchable import StreamSwitchEngine

__all__ = [
    "GenerationEventParser",
    "LineFrameDecoder",
    "StreamSwitchEngine",
    "decode_sse",
    "encode_event",
    "transcode",
]
