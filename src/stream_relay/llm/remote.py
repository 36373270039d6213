"""Remote OpenAI-compatible chat provider (``/chat/completions`` SSE)."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Sequence

import httpx

from stream_relay.config import MAX_TOKENS, RemoteSpec
from stream_relay.errors import ConfigError, ModelUnavailable
from stream_relay.llm.source import IteratorSource, collect
from stream_relay.types import (
    ChatMessage,
    Finish,
    GenerationEvent,
    GenerationResult,
    TextDelta,
    TokenUsage,
)

_logger = logging.getLogger(__name__)


class RemoteChatModel:
    """Streaming client for a hosted OpenAI-compatible API.

    A failure to open the stream raises ``ModelUnavailable`` (no retry);
    once the response is streaming, failures surface to the consumer of the
    source.
    """

    name = "remote"

    def __init__(
        self,
        url: str = "https://api.openai.com/v1",
        api_key: str = "",
        model: str = "gpt-4o-mini",
        *,
        temperature: float = 0.7,
        max_tokens: int = MAX_TOKENS,
        timeout: float = 120,
        system_prompt: str = "",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ConfigError("Remote provider requires an API key (STREAM_RELAY_API_KEY)")
        self.url = url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=30, read=60),
        )

    @classmethod
    def from_spec(
        cls, spec: RemoteSpec, *, max_tokens: int = MAX_TOKENS, system_prompt: str = "",
    ) -> RemoteChatModel:
        return cls(
            spec.url,
            spec.api_key,
            spec.model,
            temperature=spec.temperature,
            max_tokens=max_tokens,
            timeout=spec.timeout,
            system_prompt=system_prompt,
        )

    # ------------------------------------------------------------------
    # Provider interface
    # ------------------------------------------------------------------

    async def stream(self, messages: Sequence[ChatMessage]) -> IteratorSource:
        response = await self._open(self._payload(messages))
        return IteratorSource(
            _sse_events(response), on_close=response.aclose, label=f"remote:{self.model}",
        )

    async def generate_once(self, prompt: str) -> GenerationResult:
        return await collect(await self.stream([ChatMessage("user", prompt)]))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _payload(self, messages: Sequence[ChatMessage]) -> dict[str, Any]:
        wire: list[dict[str, str]] = []
        if self.system_prompt:
            wire.append({"role": "system", "content": self.system_prompt})
        wire.extend(m.to_dict() for m in messages)
        return {
            "model": self.model,
            "messages": wire,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

    async def _open(self, payload: dict[str, Any]) -> httpx.Response:
        request = self._client.build_request(
            "POST", f"{self.url}/chat/completions", json=payload, headers=self._headers,
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            _logger.error("Remote API unreachable: %s", e)
            raise ModelUnavailable(f"Remote API error: {type(e).__name__}: {e}") from e

        if response.is_error:
            body = (await response.aread()).decode(errors="replace")
            await response.aclose()
            _logger.error("Remote API returned %d: %s", response.status_code, body[:200])
            raise ModelUnavailable(
                f"Remote API error: {response.status_code}: {body[:500]}",
                status=response.status_code,
            )
        return response


async def _sse_events(response: httpx.Response) -> AsyncIterator[GenerationEvent]:
    """Translate an OpenAI chat-completions SSE body into generation events.

    The usage chunk arrives after the chunk carrying ``finish_reason``, so
    ``Finish`` is emitted at ``[DONE]`` (or end of body).
    """
    finish_reason: str | None = None
    usage = TokenUsage()

    async for raw_line in response.aiter_lines():
        if not raw_line.startswith("data:"):
            continue
        data_str = raw_line[5:].strip()
        if data_str == "[DONE]":
            break
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            data = None
        if not isinstance(data, dict):
            _logger.warning("Skipping malformed SSE chunk: %r", data_str[:200])
            continue

        u = data.get("usage")
        if isinstance(u, dict):
            usage = TokenUsage.from_counts(u.get("prompt_tokens"), u.get("completion_tokens"))

        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            continue
        choice = choices[0]
        delta = choice.get("delta")
        content = delta.get("content") if isinstance(delta, dict) else None
        if isinstance(content, str) and content:
            yield TextDelta(content)
        reason = choice.get("finish_reason")
        if isinstance(reason, str) and reason:
            finish_reason = reason

    if finish_reason is not None:
        yield Finish(reason=finish_reason, usage=usage)
