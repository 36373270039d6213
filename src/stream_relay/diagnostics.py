"""Self-checks for a stream-relay installation.

Each check fills in a ``DiagnosticCheck`` (status ``passed`` / ``failed`` /
``warning``) and never raises; ``run_diagnostics`` collects them into a
report with a summary.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Sequence

import httpx

from stream_relay.config import RelayConfig
from stream_relay.errors import RelayError
from stream_relay.llm.mock import MockModel
from stream_relay.llm.ollama import get_ollama_models, is_ollama_available
from stream_relay.llm.router import resolve_provider

_logger = logging.getLogger(__name__)

PASSED = "passed"
FAILED = "failed"
WARNING = "warning"

_ENV_VARS = (
    "STREAM_RELAY_PROVIDER",
    "STREAM_RELAY_FORCE_LOCAL",
    "OLLAMA_BASE_URL",
    "OLLAMA_MODEL",
    "STREAM_RELAY_API_KEY",
)
_SECRET_VARS = {"STREAM_RELAY_API_KEY"}


@dataclass
class DiagnosticCheck:
    id: str
    name: str
    description: str
    status: str = "pending"
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DiagnosticReport:
    checks: list[DiagnosticCheck]
    timestamp: str = field(default_factory=lambda: time.strftime("%Y-%m-%dT%H:%M:%S"))

    @property
    def summary(self) -> dict[str, int]:
        return {
            "total": len(self.checks),
            "passed": sum(c.status == PASSED for c in self.checks),
            "failed": sum(c.status == FAILED for c in self.checks),
            "warnings": sum(c.status == WARNING for c in self.checks),
        }

    @property
    def ok(self) -> bool:
        return self.summary["failed"] == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "checks": [c.to_dict() for c in self.checks],
            "summary": self.summary,
        }


@dataclass
class _Context:
    config: RelayConfig
    env: Mapping[str, str]
    transport: httpx.AsyncBaseTransport | None


def _mask(secret: str) -> str:
    if len(secret) <= 14:
        return "*" * len(secret)
    return f"{secret[:10]}...{secret[-4:]}"


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

async def _check_models(check: DiagnosticCheck, ctx: _Context) -> None:
    config = ctx.config
    check.details = {"provider": config.provider, "force_local": config.force_local}

    async def probe(url: str) -> bool:
        return await is_ollama_available(url, transport=ctx.transport)

    try:
        selection = await resolve_provider(config, probe=probe)
    except RelayError as e:
        check.status = FAILED
        check.message = f"Model configuration error: {e}"
        return

    check.details["primary"] = selection.primary.name
    check.details["fallback"] = selection.fallback.name if selection.fallback else None
    await selection.aclose()

    if config.provider == "auto" and selection.primary.name == "mock":
        check.status = WARNING
        check.message = "Local model unavailable, using mock model"
    else:
        check.status = PASSED
        check.message = f"Model configured ({selection.description})"


async def _check_ollama(check: DiagnosticCheck, ctx: _Context) -> None:
    base_url = ctx.config.ollama.url
    if await is_ollama_available(base_url, transport=ctx.transport):
        models = await get_ollama_models(base_url, transport=ctx.transport)
        check.status = PASSED
        check.message = f"Ollama running with {len(models)} models"
        check.details = {
            "base_url": base_url,
            "models": models,
            "configured_model": ctx.config.ollama.model,
            "model_pulled": ctx.config.ollama.model in models,
        }
    else:
        check.status = WARNING
        check.message = "Ollama not running (this is optional)"
        check.details = {"base_url": base_url, "suggestion": "Run: ollama serve"}


async def _check_mock(check: DiagnosticCheck, ctx: _Context) -> None:
    result = await MockModel(ctx.config.mock.response, delay=0).generate_once("Test prompt")
    if result.text:
        check.status = PASSED
        check.message = "Mock model working correctly"
        check.details = {"response_length": len(result.text), "usage": result.usage.to_dict()}
    else:
        check.status = FAILED
        check.message = "Mock model returned empty response"


async def _check_api_key(check: DiagnosticCheck, ctx: _Context) -> None:
    api_key = ctx.config.remote.api_key
    if api_key:
        check.status = PASSED
        check.message = "API key configured"
        check.details = {"length": len(api_key), "preview": _mask(api_key)}
    elif ctx.config.force_local:
        check.status = WARNING
        check.message = "No API key (local models forced)"
        check.details = {"force_local": True}
    else:
        check.status = FAILED
        check.message = "No API key configured"
        check.details = {"suggestion": "Set STREAM_RELAY_API_KEY or remote.api_key"}


async def _check_environment(check: DiagnosticCheck, ctx: _Context) -> None:
    env_vars: dict[str, str | None] = {}
    for name in _ENV_VARS:
        value = ctx.env.get(name)
        if value and name in _SECRET_VARS:
            value = _mask(value)
        env_vars[name] = value

    issues: list[str] = []
    if not ctx.env.get("STREAM_RELAY_PROVIDER"):
        issues.append("No model provider configured")
    if ctx.config.force_local and ctx.config.provider == "remote":
        issues.append("force_local overrides the remote provider")

    check.details = {"env_vars": env_vars, "issues": issues}
    if issues:
        check.status = WARNING
        check.message = f"{len(issues)} configuration issues"
    else:
        check.status = PASSED
        check.message = "Environment properly configured"


CheckFn = Callable[[DiagnosticCheck, _Context], Awaitable[None]]

CHECKS: dict[str, tuple[str, str, CheckFn]] = {
    "models": ("Model Configuration", "Resolve the configured provider", _check_models),
    "ollama": ("Ollama Integration", "Check Ollama server and models", _check_ollama),
    "mock": ("Mock Model", "Test mock model responses", _check_mock),
    "api_key": ("API Key Configuration", "Verify remote API key setup", _check_api_key),
    "environment": ("Environment Variables", "Check relay environment variables", _check_environment),
}


async def run_diagnostics(
    config: RelayConfig,
    check_ids: Sequence[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> DiagnosticReport:
    """Run the selected checks (all if *check_ids* is empty) in order.

    *transport* is handed to every HTTP probe (tests use ``httpx.MockTransport``).
    """
    ctx = _Context(config=config, env=os.environ if env is None else env, transport=transport)
    ids = list(check_ids) if check_ids else list(CHECKS)

    checks: list[DiagnosticCheck] = []
    for check_id in ids:
        entry = CHECKS.get(check_id)
        if entry is None:
            checks.append(DiagnosticCheck(
                id=check_id, name=check_id, description="", status=FAILED, message="Unknown check",
            ))
            continue
        name, description, fn = entry
        check = DiagnosticCheck(id=check_id, name=name, description=description)
        start = time.monotonic()
        try:
            await fn(check, ctx)
        except Exception as e:
            _logger.warning("Diagnostic check %s raised", check_id, exc_info=True)
            check.status = FAILED
            check.message = f"{type(e).__name__}: {e}"
            check.details = {"error": str(e)}
        check.duration_ms = round((time.monotonic() - start) * 1000, 1)
        checks.append(check)

    return DiagnosticReport(checks=checks)
