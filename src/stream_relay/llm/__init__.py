"""Model providers for stream-relay."""

from stream_relay.llm.mock import MockModel
from stream_relay.llm.ollama import LocalModelEventStream, OllamaModel, is_ollama_available
from stream_relay.llm.remote import RemoteChatModel
from stream_relay.llm.router import ProviderSelection, resolve_provider
from stream_relay.llm.source import IteratorSource, ModelProvider, Source, collect

__all__ = [
    "IteratorSource",
    "LocalModelEventStream",
    "MockModel",
    "ModelProvider",
    "OllamaModel",
    "ProviderSelection",
    "RemoteChatModel",
    "Source",
    "collect",
    "is_ollama_available",
    "resolve_provider",
]
