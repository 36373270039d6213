"""Tests for provider selection and the mock model."""

import pytest

from stream_relay.config import RelayConfig
from stream_relay.errors import ConfigError
from stream_relay.llm.mock import DEFAULT_MOCK_RESPONSE, MockModel
from stream_relay.llm.router import build_provider, resolve_provider
from stream_relay.llm.source import ModelProvider
from stream_relay.types import ChatMessage, Finish, TextDelta


def _probe(result: bool):
    calls = []

    async def probe(url: str) -> bool:
        calls.append(url)
        return result

    probe.calls = calls
    return probe


def _config(**kwargs) -> RelayConfig:
    config = RelayConfig(**kwargs)
    config.mock.delay = 0
    return config


class TestResolveProvider:
    @pytest.mark.asyncio
    async def test_auto_prefers_ollama(self):
        probe = _probe(True)
        selection = await resolve_provider(_config(), probe=probe)
        assert selection.primary.name == "ollama"
        assert selection.fallback.name == "mock"
        assert probe.calls == ["http://localhost:11434"]
        await selection.aclose()

    @pytest.mark.asyncio
    async def test_auto_falls_back_to_mock(self):
        selection = await resolve_provider(_config(), probe=_probe(False))
        assert selection.primary.name == "mock"
        assert selection.fallback is None

    @pytest.mark.asyncio
    async def test_api_key_adds_remote_fallback(self):
        config = _config()
        config.remote.api_key = "sk-test"
        selection = await resolve_provider(config, probe=_probe(True))
        assert selection.primary.name == "ollama"
        assert selection.fallback.name == "remote"
        assert selection.description == "ollama (fallback: remote)"
        await selection.aclose()

    @pytest.mark.asyncio
    async def test_remote_primary(self):
        config = _config(provider="remote")
        config.remote.api_key = "sk-test"
        probe = _probe(True)
        selection = await resolve_provider(config, probe=probe)
        assert selection.primary.name == "remote"
        assert selection.fallback.name == "ollama"
        assert probe.calls == []
        await selection.aclose()

    @pytest.mark.asyncio
    async def test_force_local_overrides_remote(self):
        config = _config(provider="remote", force_local=True)
        config.remote.api_key = "sk-test"
        selection = await resolve_provider(config, probe=_probe(False))
        assert selection.primary.name == "mock"
        assert selection.fallback is None

    @pytest.mark.asyncio
    async def test_explicit_mock_skips_probe(self):
        probe = _probe(True)
        selection = await resolve_provider(_config(provider="mock"), probe=probe)
        assert selection.primary.name == "mock"
        assert probe.calls == []

    @pytest.mark.asyncio
    async def test_remote_without_key(self):
        with pytest.raises(ConfigError):
            await resolve_provider(_config(provider="remote"), probe=_probe(True))

    def test_unknown_provider(self):
        with pytest.raises(ConfigError):
            build_provider("gpt", _config())


class TestMockModel:
    @pytest.mark.asyncio
    async def test_streams_words(self):
        model = MockModel("one two three", delay=0)
        source = await model.stream([ChatMessage("user", "count please")])
        events = [e async for e in source]
        assert [e.text for e in events if isinstance(e, TextDelta)] == ["one ", "two ", "three"]
        assert events[-1] == Finish("stop", events[-1].usage)
        assert events[-1].usage.prompt_tokens == 2
        assert events[-1].usage.completion_tokens == 3

    @pytest.mark.asyncio
    async def test_finish_reasons_per_call(self):
        model = MockModel("x", delay=0, finish_reasons=["length", "stop"])
        reasons = []
        for _ in range(3):
            result = await model.generate_once("go")
            reasons.append(result.finish_reason)
        assert reasons == ["length", "stop", "stop"]
        assert len(model.calls) == 3

    @pytest.mark.asyncio
    async def test_default_response(self):
        result = await MockModel(delay=0).generate_once("hi")
        assert result.text == DEFAULT_MOCK_RESPONSE

    def test_is_a_provider(self):
        assert isinstance(MockModel(), ModelProvider)
