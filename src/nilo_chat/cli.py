"""Command-line interface for running and administering the chat server."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from pathlib import Path
from typing import Annotated, Any, Optional, TypeVar

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from .auth import ApiKeyStore
from .channels import ChannelRegistry
from .config import get_settings
from .db import ensure_schema, get_engine, reset_database_state
from .errors import InvalidChannel, StorageFailure
from .http import build_asgi_app
from .rich_logger import channel_table, display_startup_banner, log_error, log_info, log_success, log_warning
from .store import MessageStore, format_line

console = Console()
app = typer.Typer(help="Operate the nilo-chat server and its message store.")

keys_app = typer.Typer(help="Manage agent API keys")
app.add_typer(keys_app, name="keys")

T = TypeVar("T")


def _run(awaitable: Awaitable[T]) -> T:
    """Run one coroutine on a fresh loop, releasing the engine it created."""

    async def _wrapped() -> T:
        try:
            return await awaitable
        finally:
            await get_engine().dispose()
            reset_database_state()

    return asyncio.run(_wrapped())


def _require_channel(registry: ChannelRegistry, channel: str) -> None:
    try:
        registry.require(channel)
    except InvalidChannel as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=2) from exc


@app.command("serve-http")
def serve_http(
    host: Optional[str] = typer.Option(None, help="Host interface. Defaults to HTTP_HOST setting."),
    port: Optional[int] = typer.Option(None, help="Port. Defaults to HTTP_PORT setting."),
) -> None:
    """Run the REST gateway and live socket endpoint."""
    settings = get_settings()
    resolved_host = host or settings.http.host
    resolved_port = port or settings.http.port

    display_startup_banner(settings, resolved_host, resolved_port)
    log_info("Starting server", url=f"http://{resolved_host}:{resolved_port}", socket_path="/socket.io")

    asgi_app = build_asgi_app(settings)
    uvicorn.run(asgi_app, host=resolved_host, port=resolved_port, log_level="info")


@app.command("migrate")
def migrate() -> None:
    """Create database tables and seed direct-channel greetings."""
    settings = get_settings()
    registry = ChannelRegistry.from_settings(settings)

    async def _migrate() -> list[str]:
        await ensure_schema(settings)
        return await MessageStore().seed_greetings(registry)

    with console.status("Creating database schema from models..."):
        try:
            seeded = _run(_migrate())
        except StorageFailure as exc:
            log_error("Migration failed", error=exc, database=settings.database.url)
            raise typer.Exit(code=1) from exc
    if seeded:
        log_success("Database schema ready", seeded_greetings=seeded)
    else:
        log_success("Database schema ready")


@app.command("channels")
def list_channels() -> None:
    """List configured channels."""
    registry = ChannelRegistry.from_settings(get_settings())
    console.print(channel_table(registry.listing()))


@app.command("history")
def history(
    channel: Annotated[str, typer.Argument(help="Channel name")],
    limit: Annotated[int, typer.Option("--limit", "-n", min=1, help="Most recent messages to show.")] = 50,
) -> None:
    """Print a channel's most recent messages in line form, oldest first."""
    registry = ChannelRegistry.from_settings(get_settings())
    _require_channel(registry, channel)
    try:
        messages = _run(MessageStore().history(channel, limit))
    except StorageFailure as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc
    for message in messages:
        console.print(format_line(message), markup=False, highlight=False)


@app.command("import-log")
def import_log(
    channel: Annotated[str, typer.Argument(help="Channel to import into")],
    path: Annotated[Path, typer.Argument(help="File of timestamp|username|message lines")],
) -> None:
    """Load a legacy line-oriented log into a channel."""
    registry = ChannelRegistry.from_settings(get_settings())
    _require_channel(registry, channel)
    if not path.is_file():
        console.print(f"[red]File not found:[/] {path}")
        raise typer.Exit(code=1)
    lines = path.read_text(encoding="utf-8").splitlines()
    try:
        result = _run(MessageStore().import_lines(channel, lines))
    except StorageFailure as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc
    console.print(f"[green]Imported {result.imported} message(s) into {channel}[/] ([dim]{result.skipped} skipped[/])")
    if result.skipped:
        log_warning("Skipped malformed lines", channel=channel, path=str(path), skipped=result.skipped)


@keys_app.command("create")
def keys_create(agent_name: Annotated[str, typer.Argument(help="Agent the key belongs to")]) -> None:
    """Issue a new API key; the secret is printed once."""
    if not agent_name.strip():
        console.print("[red]agent_name is required[/]")
        raise typer.Exit(code=2)
    try:
        record, raw = _run(ApiKeyStore().create(agent_name.strip()))
    except StorageFailure as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc
    console.print(f"[green]Created key {record.id} for {record.agent_name}[/]")
    console.print(raw, markup=False, highlight=False)


@keys_app.command("list")
def keys_list() -> None:
    """Show issued keys without their secrets."""
    try:
        records = _run(ApiKeyStore().list_keys())
    except StorageFailure as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc
    table = Table(title="API Keys", show_lines=False)
    table.add_column("ID")
    table.add_column("Agent")
    table.add_column("Created")
    for record in records:
        payload: dict[str, Any] = record.to_public_dict()
        table.add_row(str(payload["id"]), payload["agent_name"], str(payload["created_at"]))
    console.print(table)


@keys_app.command("revoke")
def keys_revoke(key_id: Annotated[int, typer.Argument(help="Key id to delete")]) -> None:
    """Delete an API key by id."""
    try:
        deleted = _run(ApiKeyStore().delete(key_id))
    except StorageFailure as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc
    if not deleted:
        console.print(f"[yellow]API key {key_id} not found[/]")
        raise typer.Exit(code=1)
    console.print(f"[green]Revoked key {key_id}[/]")


if __name__ == "__main__":  # pragma: no cover - manual execution path
    app()
