"""Provider router: pick the primary model and its pre-stream fallback.

Selection for ``provider: auto`` (or ``force_local``):

  * Ollama if it answers the availability probe, otherwise the mock model.
  * A configured remote API key adds the remote model as fallback, unless
    ``force_local`` is set.

``provider: remote`` uses the remote model with Ollama as fallback.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from stream_relay.config import RelayConfig
from stream_relay.errors import ConfigError
from stream_relay.llm.mock import MockModel
from stream_relay.llm.ollama import OllamaModel, is_ollama_available
from stream_relay.llm.remote import RemoteChatModel
from stream_relay.llm.source import ModelProvider

_logger = logging.getLogger(__name__)

Probe = Callable[[str], Awaitable[bool]]


@dataclass
class ProviderSelection:
    """Primary provider plus optional fallback used before streaming starts."""

    primary: ModelProvider
    fallback: ModelProvider | None = None

    @property
    def description(self) -> str:
        if self.fallback is None:
            return self.primary.name
        return f"{self.primary.name} (fallback: {self.fallback.name})"

    async def aclose(self) -> None:
        await self.primary.aclose()
        if self.fallback is not None:
            await self.fallback.aclose()


def build_provider(name: str, config: RelayConfig) -> ModelProvider:
    """Instantiate the provider called *name* from *config*."""
    if name == "ollama":
        return OllamaModel.from_spec(
            config.ollama, max_tokens=config.max_tokens, system_prompt=config.system_prompt,
        )
    if name == "remote":
        if not config.remote.has_api_key:
            raise ConfigError("Remote provider requires an API key (STREAM_RELAY_API_KEY)")
        return RemoteChatModel.from_spec(
            config.remote, max_tokens=config.max_tokens, system_prompt=config.system_prompt,
        )
    if name == "mock":
        return MockModel(config.mock.response, delay=config.mock.delay)
    raise ConfigError(f"Unknown provider {name!r}")


async def resolve_provider(
    config: RelayConfig,
    *,
    probe: Probe | None = None,
) -> ProviderSelection:
    """Resolve ``config.provider`` into concrete providers.

    *probe* checks Ollama availability (defaults to ``is_ollama_available``).
    """
    probe = probe or is_ollama_available
    name = config.provider
    if config.force_local and name == "remote":
        _logger.info("force_local set: ignoring remote provider")
        name = "auto"

    if name == "auto":
        if await probe(config.ollama.url):
            _logger.info("Using Ollama for local development (%s)", config.ollama.model)
            name = "ollama"
        else:
            _logger.warning("Ollama not available, using mock model")
            name = "mock"

    primary = build_provider(name, config)

    fallback: ModelProvider | None = None
    if name == "remote":
        fallback = build_provider("ollama", config)
    elif config.remote.has_api_key and not config.force_local:
        fallback = build_provider("remote", config)
    elif name == "ollama":
        fallback = build_provider("mock", config)

    selection = ProviderSelection(primary, fallback)
    _logger.info("Provider: %s", selection.description)
    return selection
