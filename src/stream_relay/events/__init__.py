"""Event bus for stream-relay."""

from stream_relay.events.bus import WILDCARD, EventBus, Handler

__all__ = ["WILDCARD", "EventBus", "Handler"]
