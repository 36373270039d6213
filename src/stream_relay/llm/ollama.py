"""Ollama local model integration (native ``/api/generate`` NDJSON API).

Run: ``ollama serve && ollama pull qwen2.5:3b`` (or any model you prefer).
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Sequence

import httpx

from stream_relay.config import MAX_TOKENS, OllamaSpec
from stream_relay.errors import ModelUnavailable
from stream_relay.llm.source import collect
from stream_relay.prompts import render_prompt
from stream_relay.streaming.framing import LineFrameDecoder
from stream_relay.streaming.parser import GenerationEventParser
from stream_relay.types import ChatMessage, GenerationEvent, GenerationResult

_logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"
PROBE_TIMEOUT = 2.0  # seconds, hard bound for the availability probe


def normalize_base_url(value: str | None) -> str:
    """Return a fully-qualified Ollama base URL without the ``/v1`` suffix."""
    v = (value or "").strip().rstrip("/")
    if not v:
        return DEFAULT_BASE_URL
    v = v.removesuffix("/v1")
    if v.startswith(("http://", "https://")):
        return v
    return f"http://{v}"


async def _decode_chunks(chunks: AsyncIterable[str | bytes]) -> AsyncIterator[str]:
    """Yield text from a stream of str or UTF-8 byte chunks.

    Multi-byte characters split across byte chunks are held back until
    complete.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    async for chunk in chunks:
        if isinstance(chunk, bytes):
            text = decoder.decode(chunk)
        else:
            text = chunk
        if text:
            yield text
    tail = decoder.decode(b"", final=True)
    if tail:
        yield tail


class LocalModelEventStream:
    """NDJSON byte/text stream -> lazy sequence of ``GenerationEvent``.

    Composes a ``LineFrameDecoder`` and a ``GenerationEventParser``; one
    instance per model invocation.  Implements the ``Source`` protocol.
    """

    def __init__(
        self,
        chunks: AsyncIterable[str | bytes],
        *,
        on_close: Callable[[], Awaitable[None]] | None = None,
        label: str = "",
    ) -> None:
        self._chunks = chunks
        self._decoder = LineFrameDecoder()
        self._parser = GenerationEventParser()
        self._events = self._parser.events(self._decoder.frames(_decode_chunks(chunks)))
        self._on_close = on_close
        self._closed = False
        self.label = label

    @classmethod
    def from_response(cls, response: httpx.Response, *, label: str = "") -> LocalModelEventStream:
        """Wrap an open streaming response; closing the stream releases it."""
        return cls(response.aiter_bytes(), on_close=response.aclose, label=label)

    @classmethod
    def from_chunks(cls, chunks: AsyncIterable[str | bytes]) -> LocalModelEventStream:
        return cls(chunks)

    @property
    def finished(self) -> bool:
        """Whether the terminal ``Finish`` event has been produced."""
        return self._parser.finished

    @property
    def skipped_frames(self) -> int:
        return self._parser.skipped

    def __aiter__(self) -> AsyncIterator[GenerationEvent]:
        return self

    async def __anext__(self) -> GenerationEvent:
        if self._closed:
            raise StopAsyncIteration
        return await self._events.__anext__()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.skipped_frames:
            _logger.warning(
                "Skipped %d malformed frame(s) from %s", self.skipped_frames, self.label or "stream",
            )
        try:
            await self._events.aclose()
        finally:
            if self._on_close is not None:
                await self._on_close()


class OllamaModel:
    """Streaming client for a local Ollama server.

    Parameters
    ----------
    base_url:
        Server URL (``/v1`` suffix tolerated).
    model:
        Model name as known to ``ollama list``.
    client:
        Optional pre-built ``httpx.AsyncClient`` (not closed by ``aclose``).
    """

    name = "ollama"

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        model: str = "qwen2.5:3b",
        *,
        temperature: float = 0.7,
        max_tokens: int = MAX_TOKENS,
        timeout: float = 120,
        system_prompt: str = "",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = normalize_base_url(base_url)
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=30),
        )

    @classmethod
    def from_spec(
        cls, spec: OllamaSpec, *, max_tokens: int = MAX_TOKENS, system_prompt: str = "",
    ) -> OllamaModel:
        return cls(
            spec.url,
            spec.model,
            temperature=spec.temperature,
            max_tokens=max_tokens,
            timeout=spec.timeout,
            system_prompt=system_prompt,
        )

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_streaming(self, prompt: str) -> LocalModelEventStream:
        """Open a streaming generation for *prompt*.

        The HTTP exchange is opened before returning, so an unreachable
        server or an error status raises ``ModelUnavailable`` here rather
        than mid-stream.
        """
        response = await self._open(prompt)
        _logger.debug("Ollama stream opened (model=%s)", self.model)
        return LocalModelEventStream.from_response(response, label=f"ollama:{self.model}")

    async def generate_once(self, prompt: str) -> GenerationResult:
        """Run a generation to completion and return the concatenated text."""
        return await collect(await self.generate_streaming(prompt))

    async def stream(self, messages: Sequence[ChatMessage]) -> LocalModelEventStream:
        """Provider interface: render the conversation into one prompt."""
        return await self.generate_streaming(render_prompt(messages, self.system_prompt))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _payload(self, prompt: str) -> dict[str, Any]:
        return {
            "model": self.model,
            "prompt": prompt,
            "stream": True,
            "options": {
                "temperature": self.temperature,
                "num_predict": self.max_tokens,
            },
        }

    async def _open(self, prompt: str) -> httpx.Response:
        request = self._client.build_request(
            "POST", f"{self.base_url}/api/generate", json=self._payload(prompt),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            _logger.error("Ollama request failed: %s", e)
            raise ModelUnavailable(
                f"{type(e).__name__}: {e}. Make sure Ollama is running with: ollama serve",
            ) from e

        if response.is_error:
            try:
                body = (await response.aread()).decode(errors="replace")
            finally:
                await response.aclose()
            _logger.error("Ollama API returned %d: %s", response.status_code, body[:200])
            raise ModelUnavailable(
                f"Ollama API error: {response.reason_phrase}. {body[:500]}",
                status=response.status_code,
            )
        return response


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------

async def is_ollama_available(
    base_url: str = DEFAULT_BASE_URL,
    *,
    timeout: float = PROBE_TIMEOUT,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    """Probe ``GET /api/tags``; ``True`` on 2xx.  Never raises."""
    url = f"{normalize_base_url(base_url)}/api/tags"
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            resp = await asyncio.wait_for(client.get(url), timeout)
        return resp.is_success
    except (httpx.HTTPError, OSError, asyncio.TimeoutError) as e:
        _logger.debug("Ollama probe at %s failed: %s", url, e)
        return False


async def get_ollama_models(
    base_url: str = DEFAULT_BASE_URL,
    *,
    timeout: float = PROBE_TIMEOUT,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[str]:
    """Names of locally pulled models; ``[]`` if the server can't be asked."""
    url = f"{normalize_base_url(base_url)}/api/tags"
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            resp = await client.get(url)
        if not resp.is_success:
            return []
        data = resp.json()
    except (httpx.HTTPError, OSError, ValueError) as e:
        _logger.debug("Listing Ollama models at %s failed: %s", url, e)
        return []
    models = data.get("models") if isinstance(data, dict) else None
    return [m["name"] for m in models or [] if isinstance(m, dict) and "name" in m]
