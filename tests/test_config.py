"""Tests for configuration loading."""

from pathlib import Path

import pytest

from stream_relay.config import (
    MAX_RESPONSE_SEGMENTS,
    MAX_TOKENS,
    RelayConfig,
    apply_env,
    load_config,
    parse_config,
)
from stream_relay.errors import ConfigError
from stream_relay.prompts import DEFAULT_SYSTEM_PROMPT, render_prompt
from stream_relay.types import ChatMessage


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "stream_relay.yaml"
    path.write_text(text)
    return path


class TestDefaults:
    def test_defaults(self):
        config = RelayConfig()
        assert config.provider == "auto"
        assert config.max_segments == MAX_RESPONSE_SEGMENTS == 2
        assert config.max_tokens == MAX_TOKENS == 8192
        assert config.ollama.url == "http://localhost:11434"
        assert config.ollama.model == "qwen2.5:3b"
        assert config.ollama.temperature == 0.7
        assert config.system_prompt == DEFAULT_SYSTEM_PROMPT
        assert not config.force_local

    def test_missing_explicit_path_uses_defaults(self, tmp_path: Path):
        config, path = load_config(tmp_path / "nope.yaml", env={})
        assert path is None
        assert config == RelayConfig()


class TestLoad:
    def test_yaml_sections(self, tmp_path: Path):
        path = _write(tmp_path, """
provider: ollama
max_segments: 3
telemetry_path: /tmp/t.jsonl
ollama:
  url: http://gpu-box:11434
  model: llama3.2
remote:
  api_key: sk-file
  model: gpt-4o
mock:
  delay: 0
unknown_key: ignored
""")
        config, source = load_config(path, env={})
        assert source == path
        assert config.provider == "ollama"
        assert config.max_segments == 3
        assert config.telemetry_path == "/tmp/t.jsonl"
        assert config.ollama.url == "http://gpu-box:11434"
        assert config.ollama.model == "llama3.2"
        assert config.ollama.temperature == 0.7
        assert config.remote.api_key == "sk-file"
        assert config.remote.model == "gpt-4o"
        assert config.mock.delay == 0

    def test_empty_file(self, tmp_path: Path):
        config, _ = load_config(_write(tmp_path, ""), env={})
        assert config == RelayConfig()

    def test_non_mapping_rejected(self, tmp_path: Path):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, "- a\n- b\n"), env={})

    def test_unknown_provider_rejected(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Unknown provider"):
            load_config(_write(tmp_path, "provider: gpt\n"), env={})

    def test_invalid_queue_size(self, tmp_path: Path):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, "queue_size: 0\n"), env={})


class TestEnvironment:
    def test_overrides(self, tmp_path: Path):
        path = _write(tmp_path, "provider: mock\nollama:\n  model: a\n")
        config, _ = load_config(path, env={
            "STREAM_RELAY_PROVIDER": "ollama",
            "STREAM_RELAY_FORCE_LOCAL": "true",
            "OLLAMA_BASE_URL": "http://other:11434",
            "OLLAMA_MODEL": "b",
            "STREAM_RELAY_API_KEY": "sk-env",
        })
        assert config.provider == "ollama"
        assert config.force_local is True
        assert config.ollama.url == "http://other:11434"
        assert config.ollama.model == "b"
        assert config.remote.api_key == "sk-env"

    @pytest.mark.parametrize("value, expected", [("1", True), ("yes", True), ("false", False), ("0", False)])
    def test_force_local_parsing(self, value, expected):
        assert apply_env(RelayConfig(), {"STREAM_RELAY_FORCE_LOCAL": value}).force_local is expected

    def test_empty_values_ignored(self):
        config = apply_env(RelayConfig(), {"OLLAMA_MODEL": ""})
        assert config.ollama.model == "qwen2.5:3b"

    def test_bad_env_provider_rejected(self, tmp_path: Path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "missing.yaml", env={"STREAM_RELAY_PROVIDER": "nope"})


class TestParseConfig:
    def test_none_sections(self):
        config = parse_config({"ollama": None, "provider": None})
        assert config.provider == "auto"
        assert config.ollama.model == "qwen2.5:3b"


class TestRenderPrompt:
    def test_render(self):
        prompt = render_prompt(
            [ChatMessage("user", "Hi"), ChatMessage("assistant", "Hello")], "System.",
        )
        assert prompt == "System.\n\nUser: Hi\n\nAssistant: Hello\n\nAssistant:"

    def test_without_system(self):
        assert render_prompt([ChatMessage("user", "Hi")]) == "User: Hi\n\nAssistant:"
