#!/usr/bin/env python3

from __future__ import annotations
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from agent.config import ClientConfig, ConfigError, load_config
from agent.handlers import Dispatcher, HandlerContext, get_profile
from agent.lifecycle import LifecycleManager
from agent.signer import PlaceholderSigner
from common.log import configure_root_logging, get_logger, set_level

app = typer.Typer(help="cosign-agent: long-lived signing client for the coordination server")
console = Console()
logger = get_logger(__name__)


def _load(config_path: Optional[Path], **overrides) -> ClientConfig:
    try:
        config = load_config(config_path, **overrides)
        get_profile(config.profile, config.signing_operation)
    except ConfigError as e:
        console.print(f"[red]Configuration error[/]: {e}")
        raise typer.Exit(code=2)
    return config


def _build_dispatcher(config: ClientConfig) -> Dispatcher:
    return Dispatcher(HandlerContext(config=config, signer=PlaceholderSigner()))


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file"),
    url: Optional[str] = typer.Option(None, help="WebSocket URL of the coordinator"),
    client_id: Optional[str] = typer.Option(None, help="Stable client identifier (cliId)"),
    profile: Optional[str] = typer.Option(None, help="Schema profile: partial-sig, signing or notice"),
    insecure: bool = typer.Option(False, "--insecure", help="DEVELOPMENT ONLY: skip TLS certificate verification"),
    log_level: Optional[str] = typer.Option(None, help="DEBUG, INFO, WARNING or ERROR"),
):
    """Connect and keep the session alive until interrupted."""
    config = _load(
        config_path,
        url=url,
        client_id=client_id,
        profile=profile,
        allow_insecure_tls=True if insecure else None,
        log_level=log_level,
    )
    configure_root_logging(config.log_level)
    set_level(config.log_level)
    dispatcher = _build_dispatcher(config)
    console.print(f"[bold green]cosign-agent starting[/] as {config.client_id} on {config.url} "
                  f"(profile {dispatcher.profile.name})")

    async def main_loop() -> None:
        manager = LifecycleManager(config, dispatcher)
        loop = asyncio.get_running_loop()
        if sys.platform != "win32":
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, manager.stop)
        await manager.run()

    try:
        asyncio.run(main_loop())
    except KeyboardInterrupt:
        pass
    console.print("Stopped")


@app.command("show-config")
def show_config(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file"),
):
    """Print the effective configuration."""
    config = _load(config_path)
    profile = get_profile(config.profile, config.signing_operation)
    table = Table(title="Effective configuration")
    table.add_column("Key")
    table.add_column("Value")
    for key, value in config.as_dict().items():
        table.add_row(key, str(value))
    table.add_row("signing discriminator", profile.signing_operation)
    table.add_row("signing schema", profile.signing_schema.__name__)
    console.print(table)


@app.command()
def inspect(
    frame: str = typer.Argument(..., help="Inbound frame JSON, or - to read stdin"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file"),
    profile: Optional[str] = typer.Option(None, help="Schema profile override"),
):
    """Dispatch one frame offline and print the response it would produce."""
    if frame == "-":
        frame = sys.stdin.read()
    config = _load(config_path, profile=profile)
    dispatcher = _build_dispatcher(config)
    outbound = dispatcher.handle_frame(frame)
    if outbound is None:
        console.print("[dim]no response[/]")
        return
    console.print(json.dumps(outbound.to_dict(), indent=2))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
