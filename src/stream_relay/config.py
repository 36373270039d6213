"""Configuration for stream-relay.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./stream_relay.yaml``
  3. ``~/.config/stream-relay/config.yaml``
  4. Built-in defaults

Environment overrides are applied once, at load time.  Nothing below the CLI
reads the environment; the resolved ``RelayConfig`` is passed down.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from stream_relay.errors import ConfigError
from stream_relay.prompts import DEFAULT_SYSTEM_PROMPT

_logger = logging.getLogger(__name__)

PROVIDERS = ("auto", "ollama", "mock", "remote")

MAX_RESPONSE_SEGMENTS = 2
MAX_TOKENS = 8192


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class OllamaSpec:
    """Local Ollama endpoint."""

    url: str = "http://localhost:11434"
    model: str = "qwen2.5:3b"
    temperature: float = 0.7
    timeout: float = 120


@dataclass
class RemoteSpec:
    """OpenAI-compatible remote endpoint."""

    url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    timeout: float = 120

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key)


@dataclass
class MockSpec:
    """Offline mock model."""

    response: str = ""
    delay: float = 0.02


@dataclass
class RelayConfig:
    """Top-level config."""

    # "auto" | "ollama" | "mock" | "remote"
    provider: str = "auto"
    force_local: bool = False

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_segments: int = MAX_RESPONSE_SEGMENTS
    max_tokens: int = MAX_TOKENS
    queue_size: int = 8

    # JSONL telemetry file ("" = disabled)
    telemetry_path: str = ""

    ollama: OllamaSpec = field(default_factory=OllamaSpec)
    remote: RemoteSpec = field(default_factory=RemoteSpec)
    mock: MockSpec = field(default_factory=MockSpec)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./stream_relay.yaml"),
    Path.home() / ".config" / "stream-relay" / "config.yaml",
]


def _pick(cls: type, raw: Mapping[str, Any] | None) -> dict[str, Any]:
    if not raw:
        return {}
    return {
        k: v for k, v in raw.items()
        if v is not None and k in cls.__dataclass_fields__
    }


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _validate(config: RelayConfig) -> RelayConfig:
    if config.provider not in PROVIDERS:
        raise ConfigError(
            f"Unknown provider {config.provider!r} (expected one of {', '.join(PROVIDERS)})"
        )
    if config.max_segments < 0:
        raise ConfigError("max_segments must be >= 0")
    if config.queue_size < 1:
        raise ConfigError("queue_size must be >= 1")
    return config


def apply_env(config: RelayConfig, env: Mapping[str, str] | None = None) -> RelayConfig:
    """Overlay environment variables onto *config* (in place) and return it."""
    env = os.environ if env is None else env
    if env.get("STREAM_RELAY_PROVIDER"):
        config.provider = env["STREAM_RELAY_PROVIDER"]
    if env.get("STREAM_RELAY_FORCE_LOCAL"):
        config.force_local = _as_bool(env["STREAM_RELAY_FORCE_LOCAL"])
    if env.get("OLLAMA_BASE_URL"):
        config.ollama.url = env["OLLAMA_BASE_URL"]
    if env.get("OLLAMA_MODEL"):
        config.ollama.model = env["OLLAMA_MODEL"]
    if env.get("STREAM_RELAY_API_KEY"):
        config.remote.api_key = env["STREAM_RELAY_API_KEY"]
    return config


def parse_config(raw: Mapping[str, Any]) -> RelayConfig:
    """Build a ``RelayConfig`` from an already-loaded mapping."""
    top = _pick(RelayConfig, raw)
    for section in ("ollama", "remote", "mock"):
        top.pop(section, None)
    return RelayConfig(
        **top,
        ollama=OllamaSpec(**_pick(OllamaSpec, raw.get("ollama"))),
        remote=RemoteSpec(**_pick(RemoteSpec, raw.get("remote"))),
        mock=MockSpec(**_pick(MockSpec, raw.get("mock"))),
    )


def load_config(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[RelayConfig, Path | None]:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.
    env:
        Environment mapping for overrides (defaults to ``os.environ``).

    Returns
    -------
    tuple[RelayConfig, Path | None]
        The config and the file it came from (*None* for defaults).
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return _validate(apply_env(RelayConfig(), env)), None
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return _validate(apply_env(RelayConfig(), env)), None

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path}: top level must be a mapping")

    return _validate(apply_env(parse_config(raw), env)), config_path
