"""
convoy.cli - Command-line interface.

Commands::

    convoy models [--type chat|embedding|reranker] [--provider P]
    convoy ask MODEL PROMPT [--no-stream] [--system TEXT]

``MODEL`` is ``provider:model-id``, e.g. ``claude:claude-sonnet-4-5`` or
``ollama:qwen2.5-coder:7b``. Ctrl-C during ``ask`` cancels the request and
keeps whatever text already arrived.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from convoy.cancellation import CancellationToken
from convoy.catalog import ModelCatalog
from convoy.client import Client
from convoy.config import ConvoyConfig
from convoy.core.messages import Conversation, Message, ToolCallsRequested
from convoy.core.models import ModelRef, ModelSpec, ModelType
from convoy.errors import ConvoyError, OperationCancelled

console = Console()
err_console = Console(stderr=True)


def setup_logging(level: str | int = logging.WARNING, log_filter: str = "convoy") -> None:
    """Configure root logging; only loggers under *log_filter* are emitted."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    if log_filter:
        for handler in logging.getLogger().handlers:
            if not any(getattr(f, "name", None) == log_filter for f in handler.filters):
                handler.addFilter(logging.Filter(log_filter))


def _get_config() -> ConvoyConfig:
    try:
        return ConvoyConfig.from_env()
    except ConvoyError as exc:
        _fail(exc)


def _fail(exc: ConvoyError, code: int = 1) -> None:
    err_console.print(f"[red]Error:[/red] {escape(str(exc))}", highlight=False)
    if exc.hint:
        err_console.print(f"[dim]{escape(exc.hint)}[/dim]", highlight=False)
    sys.exit(code)


def _catalog(ctx: click.Context, config: ConvoyConfig) -> ModelCatalog:
    catalog = (ctx.obj or {}).get("catalog")
    if catalog is None:
        catalog = ModelCatalog(config.catalog_url, max_age=config.catalog_max_age)
    return catalog


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """convoy - one conversation API across LLM providers."""
    ctx.ensure_object(dict)
    config = _get_config()
    setup_logging(logging.DEBUG if verbose else config.log_level, config.log_filter)
    ctx.obj["config"] = config


# ---------------------------------------------------------------------------
# models
# ---------------------------------------------------------------------------

def _price(value: float | None) -> str:
    return "-" if value is None else f"{value:g}"


def _limit(value: int | None) -> str:
    return "-" if value is None else f"{value:,}"


@main.command()
@click.option(
    "--type", "model_type",
    type=click.Choice([t.value for t in ModelType]),
    default=None,
    help="Only list models of this type.",
)
@click.option("--provider", default=None, help="Only list models of this provider.")
@click.pass_context
def models(ctx: click.Context, model_type: str | None, provider: str | None) -> None:
    """List models known to the catalog."""
    config: ConvoyConfig = ctx.obj["config"]
    catalog = _catalog(ctx, config)

    if catalog.source_url is not None:
        try:
            asyncio.run(catalog.refresh())
        except ConvoyError as exc:
            _fail(exc)

    specs: list[ModelSpec] = sorted(
        catalog.list_models(model_type, provider), key=lambda s: (s.provider, s.model_id)
    )
    if not specs:
        console.print("[yellow]No models match.[/yellow]")
        return

    table = Table(title=f"Models ({len(specs)})")
    table.add_column("Model", style="cyan")
    table.add_column("Type")
    table.add_column("Context", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Tools")
    table.add_column("Vision")
    table.add_column("$/M in", justify="right", style="dim")
    table.add_column("$/M out", justify="right", style="dim")
    for spec in specs:
        table.add_row(
            str(spec.ref),
            spec.model_type.value,
            _limit(spec.limits.max_input),
            _limit(spec.limits.max_output),
            "yes" if spec.capabilities.accepts_tool_calls else "",
            "yes" if spec.capabilities.accepts_images else "",
            _price(spec.pricing.input),
            _price(spec.pricing.output),
        )
    console.print(table)


# ---------------------------------------------------------------------------
# ask
# ---------------------------------------------------------------------------

async def _ask(
    client: Client,
    conversation: Conversation,
    token: CancellationToken,
) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")
    except (NotImplementedError, RuntimeError):
        pass  # no signal handlers off the main thread or on Windows

    def on_delta(text: str) -> None:
        console.print(text, end="", markup=False, highlight=False, soft_wrap=True)

    try:
        async with client:
            outcome = await client.complete(conversation, token=token, on_delta=on_delta)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass

    console.print()
    if isinstance(outcome, ToolCallsRequested):
        names = ", ".join(c.name for c in outcome.calls)
        console.print(f"[yellow]Model requested tools ({names}); none are available here.[/yellow]")
    console.print(f"[dim]{client.cost_tracker.format_cost()}[/dim]")


@main.command()
@click.argument("model")
@click.argument("prompt")
@click.option("--no-stream", is_flag=True, help="Wait for the whole answer instead of streaming.")
@click.option("--system", "system_prompt", default="", help="System prompt.")
@click.pass_context
def ask(ctx: click.Context, model: str, prompt: str, no_stream: bool, system_prompt: str) -> None:
    """Send one prompt to MODEL (provider:model-id) and print the answer."""
    config: ConvoyConfig = ctx.obj["config"]
    try:
        ref = ModelRef.parse(model)
        client = Client(
            config,
            ref.provider,
            catalog=_catalog(ctx, config),
            http_client=ctx.obj.get("http_client"),
        )
    except ConvoyError as exc:
        _fail(exc)

    conversation = Conversation(model=ref, stream=config.stream and not no_stream)
    if system_prompt:
        conversation.append(Message.system(system_prompt))
    conversation.append(Message.user(prompt))

    token = CancellationToken()
    try:
        asyncio.run(_ask(client, conversation, token))
    except OperationCancelled:
        console.print()
        err_console.print("[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except ConvoyError as exc:
        console.print()
        _fail(exc)


if __name__ == "__main__":
    main()
