"""Chat response orchestration for stream-relay."""

from stream_relay.chat.orchestrator import ChatCompletionOrchestrator, ChatResponse

__all__ = ["ChatCompletionOrchestrator", "ChatResponse"]
