#!/usr/bin/env python3

from __future__ import annotations
import asyncio
from pathlib import Path
from typing import Dict, Optional

import typer
from rich.console import Console
from rich.table import Table

from slixmpp import ClientXMPP

from jibri_queue.connection import XMPPConnection
from jibri_queue.errors import QueueError
from jibri_queue.queue import QueueClient
from jibri_queue.types import EventKind
from shared.config import ConfigError, QueueSettings, load_settings
from shared.log import get_logger, set_level

app = typer.Typer(help="Jibri queue client CLI")
console = Console()
logger = get_logger(__name__)


def build_settings(
    config: Optional[Path] = None,
    account_jid: Optional[str] = None,
    host: Optional[str] = None,
    port: Optional[int] = None,
    queue_jid: Optional[str] = None,
    room_jid: Optional[str] = None,
    timeout: Optional[float] = None,
) -> QueueSettings:
    """Settings file and environment first, command line options on top."""
    try:
        settings = load_settings(config)
        overrides = {
            "account_jid": account_jid,
            "host": host,
            "port": port,
            "queue_jid": queue_jid,
            "room_jid": room_jid,
            "iq_timeout": timeout,
        }
        merged = settings.to_dict()
        merged.update({k: v for k, v in overrides.items() if v is not None})
        settings = QueueSettings.from_dict(merged)
    except ConfigError as e:
        console.print(f"[red]Invalid configuration[/]: {e}")
        raise typer.Exit(code=2)

    if settings.log_level:
        set_level(settings.log_level)
    return settings


def metrics_table(queue_id: int, metrics: Dict[str, str]) -> Table:
    table = Table(title=f"Jibri queue #{queue_id}")
    table.add_column("Position")
    table.add_column("Estimated time left")
    table.add_row(metrics.get("position", "-"), metrics.get("estimatedTimeLeft", "-"))
    return table


@app.command()
def join(
    config: Optional[Path] = typer.Option(None, help="YAML settings file"),
    account_jid: Optional[str] = typer.Option(None, "--jid", help="Our XMPP account"),
    password: Optional[str] = typer.Option(None, help="Account password (or JIBRI_QUEUE_PASSWORD)"),
    host: Optional[str] = typer.Option(None, help="XMPP server host, defaults to the account domain"),
    port: Optional[int] = typer.Option(None, help="XMPP client port"),
    queue_jid: Optional[str] = typer.Option(None, help="JID of the jibri queue service"),
    room_jid: Optional[str] = typer.Option(None, help="JID of the conference room"),
    timeout: Optional[float] = typer.Option(None, help="Request timeout in seconds (0 keeps the library default)"),
    exit_on_token: bool = typer.Option(False, help="Leave the queue once a token arrives"),
):
    """Join a jibri queue and print updates until interrupted."""
    settings = build_settings(config, account_jid, host, port, queue_jid, room_jid, timeout)
    if password is not None:
        settings.password = password
    if not settings.queue_jid or not settings.room_jid:
        console.print("[red]Both a queue JID and a room JID are required[/]")
        raise typer.Exit(code=2)
    if not settings.account_jid or not settings.password:
        console.print("[red]An account JID and password are required[/]")
        raise typer.Exit(code=2)

    try:
        asyncio.run(_join_and_wait(settings, exit_on_token))
    except KeyboardInterrupt:
        console.print("[dim]Interrupted[/]")
    except (QueueError, OSError) as e:
        console.print(f"[red]Queue error[/]: {e}")
        raise typer.Exit(code=1)


async def _join_and_wait(settings: QueueSettings, exit_on_token: bool) -> None:
    xmpp = ClientXMPP(settings.account_jid, settings.password)
    xmpp.register_plugin("xep_0199")  # answer server pings
    connection = XMPPConnection(xmpp, iq_timeout=settings.effective_iq_timeout)
    try:
        await connection.connect(settings.host, settings.port)
    except QueueError:
        await connection.close()
        raise
    closed_task = asyncio.create_task(connection.wait_closed())

    queue = QueueClient(connection, settings.queue_jid, settings.room_jid, settings=settings)
    token_received = asyncio.Event()

    def on_metrics(metrics: Dict[str, str]) -> None:
        console.print(metrics_table(queue.id, metrics))

    def on_token(token: Optional[str]) -> None:
        console.print(f"[bold green]Token received[/]: {token}")
        token_received.set()

    queue.subscribe(EventKind.METRICS, on_metrics)
    queue.subscribe(EventKind.TOKEN, on_token)

    try:
        await queue.join()
        console.print(f"[bold green]Joined[/] {settings.queue_jid} for {settings.room_jid}")
        if exit_on_token:
            await token_received.wait()
        else:
            await closed_task
    finally:
        if queue.joined and not closed_task.done():
            try:
                await queue.leave()
                console.print("[dim]Left the queue[/]")
            except QueueError as e:
                logger.warning("Leaving the queue failed: %s", e)
        queue.dispose()
        closed_task.cancel()
        await connection.close()


@app.command("show-config")
def show_config(
    config: Optional[Path] = typer.Option(None, help="YAML settings file"),
):
    """Print the effective settings."""
    settings = build_settings(config)
    table = Table(title="Effective settings")
    table.add_column("Setting")
    table.add_column("Value")
    for key, value in settings.to_dict().items():
        if key == "password" and value:
            value = "********"
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
