"""CLI commands for relay-agent."""

import asyncio
import time
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from relay_agent import __brand__, __logo__, __version__

app = typer.Typer(
    name="relay-agent",
    help=f"{__logo__} {__brand__} - Message dispatch for chat assistants",
    no_args_is_help=True,
)

console = Console()


def _cli_fail(cause: str, fix: str | None = None, *, exit_code: int = 1) -> None:
    """Print a consistent CLI error block and exit."""
    console.print(f"[red]{cause}[/red]")
    if fix:
        console.print(f"[dim]Fix: {fix}[/dim]")
    raise typer.Exit(exit_code)


def _chain_providers(config: Any) -> list[str]:
    """Providers referenced by the primary model and its fallbacks, in order."""
    from relay_agent.agent.models import build_fallback_chain, resolve_model

    try:
        primary = resolve_model(config.agent.model, config.agent.aliases, config.agent.provider)
    except ValueError:
        _cli_fail("agent.model is empty.", "Set agent.model in the config file.")
    providers: list[str] = []
    for ref in build_fallback_chain(primary, config.agent.fallbacks, config.agent.aliases):
        if ref.provider not in providers:
            providers.append(ref.provider)
    return providers


def _build_pool(config: Any):
    from relay_agent.auth.keys import default_cooldown_store, seed_pool
    from relay_agent.auth.pool import CredentialPool

    pool = CredentialPool(store=default_cooldown_store())
    seed_pool(pool, config, _chain_providers(config))
    return pool


def _build_dispatcher(config: Any):
    """Wire pool, session factory and metrics into a dispatcher."""
    from relay_agent.agent.litellm_session import LiteLLMSessionFactory
    from relay_agent.observability.metrics import MetricsStore
    from relay_agent.pipeline.dispatcher import Dispatcher
    from relay_agent.utils.helpers import get_data_path

    pool = _build_pool(config)
    if not any(pool.entries(provider) for provider in pool.providers):
        primary = _chain_providers(config)[0]
        console.print(
            f"[yellow]Warning: no API keys loaded; set {primary.upper()}_API_KEY "
            f"or providers.{primary}.apiKey[/yellow]"
        )

    metrics = MetricsStore(get_data_path() / "metrics" / "events.jsonl")
    return Dispatcher(
        config,
        LiteLLMSessionFactory(config),
        pool=pool,
        metrics=metrics,
    )


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} {__brand__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-v", callback=version_callback, is_eager=True),
):
    """relay-agent - Message dispatch for chat assistants."""
    pass


@app.command("version")
def version_command():
    """Show relay-agent version."""
    console.print(f"{__logo__} {__brand__} v{__version__}")


# ============================================================================
# Chat
# ============================================================================


@app.command()
def chat(
    message: str = typer.Option(None, "--message", "-m", help="Message to send to the agent"),
    session_id: str = typer.Option("cli", "--session", "-s", help="Session ID"),
):
    """Talk to the agent through the dispatch pipeline."""
    from relay_agent.config.loader import load_config
    from relay_agent.pipeline.context import InboundEvent

    config = load_config()
    dispatcher = _build_dispatcher(config)

    def print_chunk(text: str) -> None:
        console.print(f"\n{__logo__} {text}")

    async def send(text: str) -> None:
        result = await dispatcher.dispatch(
            InboundEvent(source="cli", body=text, peer_id=session_id, on_chunk=print_chunk)
        )
        if result.error:
            console.print(f"[red]Error:[/red] {result.error}")
        elif result.aborted:
            console.print("[dim]Turn aborted.[/dim]")

    if message:
        # Single message mode
        async def run_once():
            try:
                await send(message)
            finally:
                await dispatcher.shutdown()

        asyncio.run(run_once())
        return

    # Interactive mode
    from prompt_toolkit import PromptSession
    from prompt_toolkit.history import FileHistory
    from prompt_toolkit.styles import Style

    from relay_agent.utils.helpers import ensure_dir, get_data_path

    history_file = ensure_dir(get_data_path() / "state") / "cli_history"
    session = PromptSession(history=FileHistory(str(history_file)))
    style = Style.from_dict({"prompt": "bold blue"})

    console.print(f"{__logo__} Interactive mode (Ctrl+C to exit)\n")

    async def run_interactive():
        try:
            while True:
                try:
                    user_input = await session.prompt_async("You: ", style=style)
                    if not user_input.strip():
                        continue
                    await send(user_input)
                    console.print()
                except (KeyboardInterrupt, EOFError):
                    console.print("\nGoodbye!")
                    break
        finally:
            await dispatcher.shutdown()

    asyncio.run(run_interactive())


# ============================================================================
# Gateway
# ============================================================================


@app.command()
def gateway(
    host: str = typer.Option(None, "--host", help="Bind host (default: gateway.host)"),
    port: int = typer.Option(None, "--port", "-p", help="Bind port (default: gateway.port)"),
    verbose: bool = typer.Option(False, "--verbose", help="Verbose output"),
):
    """Start the HTTP gateway and enabled channels."""
    import sys

    from loguru import logger

    from relay_agent.channels.webhook import WebhookChannel
    from relay_agent.config.loader import load_config
    from relay_agent.gateway.http_server import GatewayHttpServer

    if verbose:
        logger.remove()
        logger.add(sys.stderr, level="DEBUG")

    config = load_config()
    bind_host = host or config.gateway.host
    bind_port = config.gateway.port if port is None else port

    console.print(f"{__logo__} Starting {__brand__} gateway on {bind_host}:{bind_port}...")

    dispatcher = _build_dispatcher(config)
    channels = []
    if config.channels.webhook.enabled:
        webhook = WebhookChannel(config.channels.webhook)
        dispatcher.register_channel(webhook)
        channels.append(webhook)

    if channels:
        console.print(f"[green]✓[/green] Channels enabled: {', '.join(c.name for c in channels)}")
    else:
        console.print("[yellow]Warning: No channels enabled[/yellow]")

    server = GatewayHttpServer(dispatcher, host=bind_host, port=bind_port)

    async def run():
        start_error: str = ""
        try:
            for channel in channels:
                await channel.start()
            await server.start()
            console.print(f"[green]✓[/green] Gateway: http://{bind_host}:{server.bound_port}/dispatch")
            await asyncio.Event().wait()
        except (OSError, ValueError) as e:
            start_error = str(e)
        except (KeyboardInterrupt, asyncio.CancelledError):
            console.print("\nShutting down...")
        finally:
            await server.stop()
            await dispatcher.shutdown()
            for channel in channels:
                await channel.stop()
            if start_error:
                console.print(f"[red]Gateway startup failed:[/red] {start_error}")
                raise typer.Exit(1)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("Stopped.")


# ============================================================================
# Credential Commands
# ============================================================================


keys_app = typer.Typer(help="Inspect API key rotation")
app.add_typer(keys_app, name="keys")


@keys_app.callback(invoke_without_command=True)
def keys_main(ctx: typer.Context):
    """Inspect API key rotation."""
    if ctx.invoked_subcommand is None:
        keys_status()


@keys_app.command("status")
def keys_status():
    """Show every loaded key with its cooldown state."""
    from relay_agent.config.loader import load_config

    config = load_config()
    pool = _build_pool(config)
    now = time.time()

    table = Table(title="API Keys")
    table.add_column("Provider", style="cyan")
    table.add_column("Key", style="magenta")
    table.add_column("Status")
    table.add_column("Failures", justify="right")
    table.add_column("Last reason", style="yellow")

    rows = 0
    for provider in pool.providers:
        for entry in pool.entries(provider):
            remaining = entry.backoff_until - now
            if remaining > 0:
                status = f"[yellow]cooldown {int(remaining)}s[/yellow]"
            else:
                status = "[green]ready[/green]"
            table.add_row(provider, entry.fingerprint, status, str(entry.failures), entry.last_reason or "-")
            rows += 1

    if not rows:
        console.print("[dim]No API keys configured.[/dim]")
        return
    console.print(table)


@keys_app.command("reset")
def keys_reset(
    provider: str = typer.Argument(..., help="Provider whose cooldowns to clear"),
):
    """Clear cooldowns for a provider's keys."""
    from relay_agent.auth.keys import default_cooldown_store, load_provider_keys
    from relay_agent.auth.pool import CredentialPool
    from relay_agent.config.loader import load_config

    config = load_config()
    name = provider.strip().lower()
    pool = CredentialPool(store=default_cooldown_store())
    for key in load_provider_keys(config, name):
        pool.add(name, key)

    count = pool.reset(name)
    if not count:
        _cli_fail(
            f"No API keys configured for provider '{name}'.",
            f"Set {name.upper()}_API_KEY or providers.{name}.apiKey in the config file.",
        )
    console.print(f"[green]✓[/green] Cleared cooldowns for {count} {name} key(s)")


# ============================================================================
# Config Commands
# ============================================================================


config_app = typer.Typer(help="Inspect configuration")
app.add_typer(config_app, name="config")


@config_app.command("path")
def config_path():
    """Print the config file location."""
    from relay_agent.config.loader import get_config_path

    path = get_config_path()
    suffix = "" if path.exists() else " [dim](not created yet)[/dim]"
    console.print(f"{path}{suffix}", soft_wrap=True)


if __name__ == "__main__":
    app()
