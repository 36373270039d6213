"""Exception hierarchy for stream-relay."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for every error raised by stream-relay."""

    def __init__(self, msg: str, /) -> None:
        super().__init__(msg)
        self.message = msg

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


class ConfigError(RelayError):
    """Invalid configuration value."""


class MalformedFrame(RelayError):
    """A framed line could not be parsed as a generation record.

    Recovered by the parser (logged and skipped); never propagated.
    """

    def __init__(self, frame: str, reason: str) -> None:
        super().__init__(f"Malformed frame ({reason}): {frame[:200]!r}")
        self.frame = frame
        self.reason = reason


class ModelUnavailable(RelayError):
    """A model endpoint is unreachable or answered with a non-success status."""

    def __init__(self, detail: str, *, status: int | None = None) -> None:
        msg = f"Model unavailable ({status}): {detail}" if status else f"Model unavailable: {detail}"
        super().__init__(msg)
        self.detail = detail
        self.status = status


class UpstreamStreamError(RelayError):
    """The active source failed after output had begun."""


class MaxSegmentsExceeded(RelayError):
    """The continuation cap was reached while the model was still truncated."""

    def __init__(self, max_segments: int) -> None:
        super().__init__(
            f"Cannot continue message: maximum segments reached ({max_segments})"
        )
        self.max_segments = max_segments


class AlreadyClosed(RelayError):
    """A source switch was requested on a closed engine."""
