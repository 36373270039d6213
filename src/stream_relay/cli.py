"""Command line interface for stream-relay."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.table import Table

from stream_relay import __version__
from stream_relay.chat.orchestrator import ChatCompletionOrchestrator
from stream_relay.config import PROVIDERS, RelayConfig, load_config
from stream_relay.diagnostics import CHECKS, DiagnosticReport, run_diagnostics
from stream_relay.errors import RelayError
from stream_relay.events.bus import EventBus
from stream_relay.llm.ollama import get_ollama_models, is_ollama_available
from stream_relay.llm.router import resolve_provider
from stream_relay.telemetry import TelemetryRecorder
from stream_relay.types import ChatMessage, TextDelta

console = Console()

_STATUS_STYLE = {
    "passed": "[green]passed[/green]",
    "failed": "[red]failed[/red]",
    "warning": "[yellow]warning[/yellow]",
}


def _load(ctx: click.Context) -> RelayConfig:
    config, path = load_config(ctx.obj.get("config_path"))
    if path is not None:
        console.print(f"[dim]Config: {path}[/dim]", highlight=False)
    return config


def _fail(error: RelayError) -> None:
    console.print(f"[red]Error:[/red] {error.message}", highlight=False)
    sys.exit(1)


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to stream_relay.yaml (auto-detected from CWD or ~/.config/stream-relay/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.version_option(__version__, prog_name="stream-relay")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool):
    """stream-relay - stream chat completions with automatic continuation."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# ---------------------------------------------------------------------------
# chat
# ---------------------------------------------------------------------------

async def _chat(config: RelayConfig, message: str, sse: bool) -> None:
    bus = EventBus()
    recorder = TelemetryRecorder(config.telemetry_path) if config.telemetry_path else None
    if recorder is not None:
        recorder.attach(bus)

    selection = await resolve_provider(config)
    orchestrator = ChatCompletionOrchestrator(
        selection.primary,
        selection.fallback,
        event_bus=bus,
        max_segments=config.max_segments,
        queue_size=config.queue_size,
    )
    try:
        response = await orchestrator.start([ChatMessage("user", message)])
        if sse:
            async for record in response.sse():
                click.echo(record.decode("utf-8"), nl=False)
            return

        async for event in response.events():
            if isinstance(event, TextDelta):
                console.out(event.text, end="", highlight=False)
        console.print()
        usage = response.usage
        console.print(
            f"[dim]{response.provider_name} | {response.segments} segment(s) | "
            f"finish={response.finish_reason} | tokens: {usage.prompt_tokens} in, "
            f"{usage.completion_tokens} out, {usage.total_tokens} total[/dim]",
            highlight=False,
        )
    finally:
        await orchestrator.aclose()
        if recorder is not None:
            recorder.close()


@main.command()
@click.argument("message")
@click.option("--provider", "-p", type=click.Choice(PROVIDERS), default=None,
              help="Override the configured provider")
@click.option("--sse", is_flag=True, help="Print the raw event stream instead of text")
@click.pass_context
def chat(ctx: click.Context, message: str, provider: str | None, sse: bool):
    """Send MESSAGE and stream the answer."""
    try:
        config = _load(ctx)
        if provider:
            config.provider = provider
        asyncio.run(_chat(config, message, sse))
    except RelayError as e:
        _fail(e)


# ---------------------------------------------------------------------------
# diagnose
# ---------------------------------------------------------------------------

def _print_report(report: DiagnosticReport) -> None:
    table = Table(title="Diagnostics", show_lines=False, border_style="dim")
    table.add_column("Check", style="bold")
    table.add_column("Status")
    table.add_column("Message")
    table.add_column("Time", justify="right", style="dim")
    for check in report.checks:
        table.add_row(
            check.name,
            _STATUS_STYLE.get(check.status, check.status),
            check.message,
            f"{check.duration_ms:.0f}ms",
        )
    console.print(table)
    s = report.summary
    console.print(
        f"{s['total']} checks: [green]{s['passed']} passed[/green], "
        f"[red]{s['failed']} failed[/red], [yellow]{s['warnings']} warnings[/yellow]"
    )


@main.command()
@click.option("--check", "check_ids", multiple=True,
              help=f"Run only these checks ({', '.join(CHECKS)}); repeatable")
@click.pass_context
def diagnose(ctx: click.Context, check_ids: tuple[str, ...]):
    """Check configuration, models and environment."""
    try:
        config = _load(ctx)
    except RelayError as e:
        _fail(e)
        return
    report = asyncio.run(run_diagnostics(config, check_ids))
    _print_report(report)
    if not report.ok:
        sys.exit(1)


# ---------------------------------------------------------------------------
# models
# ---------------------------------------------------------------------------

async def _models(config: RelayConfig) -> list[str] | None:
    if not await is_ollama_available(config.ollama.url):
        return None
    return await get_ollama_models(config.ollama.url)


@main.command()
@click.pass_context
def models(ctx: click.Context):
    """List models pulled into the local Ollama server."""
    try:
        config = _load(ctx)
    except RelayError as e:
        _fail(e)
        return
    names = asyncio.run(_models(config))
    if names is None:
        console.print(f"[yellow]Ollama not running at {config.ollama.url}[/yellow] (run: ollama serve)")
        sys.exit(1)
    if not names:
        console.print("[dim]No models pulled. Try: ollama pull qwen2.5:3b[/dim]")
        return
    for name in names:
        marker = " [green](configured)[/green]" if name == config.ollama.model else ""
        console.print(f"  {name}{marker}", highlight=False)


if __name__ == "__main__":
    main()
