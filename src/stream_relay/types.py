"""Shared data types for stream-relay."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Literal, Union


# ---------------------------------------------------------------------------
# Token accounting
# ---------------------------------------------------------------------------

STOP_REASON_STOP = "stop"
STOP_REASON_LENGTH = "length"


def _count(value: Any) -> int:
    """Coerce an upstream counter to a non-negative int (missing -> 0)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(0, int(value))


@dataclass(frozen=True)
class TokenUsage:
    """Token usage for one model invocation (or a sum of several)."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_counts(cls, prompt: Any = None, completion: Any = None) -> TokenUsage:
        p = _count(prompt)
        c = _count(completion)
        return cls(prompt_tokens=p, completion_tokens=c, total_tokens=p + c)

    def __add__(self, other: TokenUsage) -> TokenUsage:
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


# ---------------------------------------------------------------------------
# Generation events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TextDelta:
    """An incremental fragment of generated text."""

    text: str


@dataclass(frozen=True)
class Finish:
    """Terminal event of one model invocation.

    ``reason`` is ``"stop"``, ``"length"`` or any provider-defined value,
    passed through untouched.  Only ``"length"`` triggers continuation.
    """

    reason: str = STOP_REASON_STOP
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def truncated(self) -> bool:
        return self.reason == STOP_REASON_LENGTH


GenerationEvent = Union[TextDelta, Finish]


@dataclass
class GenerationResult:
    """Buffered result of a non-streaming generation."""

    text: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str = STOP_REASON_STOP


@dataclass
class SegmentOutcome:
    """What a source produced by the time it ended.

    Handed to the engine's completion callback.  ``finish`` is ``None`` when
    the source ran dry without a terminal event.
    """

    text: str = ""
    finish: Finish | None = None

    @property
    def reason(self) -> str | None:
        return self.finish.reason if self.finish is not None else None

    @property
    def usage(self) -> TokenUsage:
        return self.finish.usage if self.finish is not None else TokenUsage()


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

Role = Literal["user", "assistant"]


@dataclass
class ChatMessage:
    """One conversational turn."""

    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ChatMessage:
        role = raw.get("role", "user")
        if role not in ("user", "assistant"):
            raise ValueError(f"Role must be 'user' or 'assistant', got {role!r}")
        return cls(role=role, content=str(raw.get("content", "")))


# ---------------------------------------------------------------------------
# Telemetry events
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Events published on the EventBus while serving a response."""

    RESPONSE_STARTED = "response.started"
    RESPONSE_FALLBACK = "response.fallback"
    SEGMENT_STARTED = "segment.started"
    SEGMENT_FINISHED = "segment.finished"
    SEGMENT_CONTINUED = "segment.continued"
    MESSAGE_COMPLETE = "message.complete"
    RESPONSE_ERROR = "response.error"


@dataclass
class RelayEvent:
    """Event emitted via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
