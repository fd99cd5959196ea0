"""Rich console output for operator-facing messages and the startup banner."""

from __future__ import annotations

import json
from typing import Any, Optional

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from .config import Settings

console = Console(stderr=True, width=120)

_SENSITIVE_MARKERS = ("key", "token", "secret", "password")


def _safe_json_format(data: Any, max_length: int = 2000) -> str:
    """Format data as JSON with truncation."""
    json_str = json.dumps(data, indent=2, default=str, ensure_ascii=False)
    if len(json_str) > max_length:
        json_str = json_str[:max_length] + "\n... (truncated)"
    return json_str


def _print_with_details(text: Text, border_style: str, kwargs: dict[str, Any]) -> None:
    console.print(text)
    if kwargs:
        details = _safe_json_format(kwargs, max_length=500)
        console.print(Panel(details, border_style=border_style, box=box.ROUNDED))


def log_info(message: str, **kwargs) -> None:
    _print_with_details(Text(f"INFO  {message}", style="bold cyan"), "cyan", kwargs)


def log_warning(message: str, **kwargs) -> None:
    _print_with_details(Text(f"⚠  {message}", style="bold yellow"), "yellow", kwargs)


def log_error(message: str, error: Optional[Exception] = None, **kwargs) -> None:
    """Log an error message with Rich formatting."""
    console.print(Text(f"✗ {message}", style="bold red"))

    if error or kwargs:
        error_data = kwargs.copy()
        if error:
            error_data["error_type"] = type(error).__name__
            error_data["error_message"] = str(error)

        details = _safe_json_format(error_data, max_length=500)
        console.print(Panel(details, border_style="red", box=box.ROUNDED, title="[bold red]Error Details[/bold red]"))


def log_success(message: str, **kwargs) -> None:
    _print_with_details(Text(f"✓ {message}", style="bold green"), "green", kwargs)


def startup_config(settings: Settings, host: str, port: int) -> dict[str, Any]:
    """Flatten the settings worth showing at boot into panel sections."""
    return {
        "server": {"host": host, "port": port, "environment": settings.environment},
        "database": {"url": settings.database.url},
        "auth": {
            "admin_api_key": settings.auth.admin_api_key,
            "key_registration_open": settings.auth.key_registration_open,
        },
        "chat": {
            "direct_channels": ", ".join(settings.chat.direct_channels) or "-",
            "history_limit": settings.chat.history_limit,
            "greeter_channel": settings.chat.greeter_channel or "-",
        },
    }


def create_startup_panel(config: dict[str, Any]) -> Panel:
    """Tree of configuration sections with secrets masked."""
    tree = Tree("[bold bright_white]nilo-chat server[/bold bright_white]")

    for section, values in config.items():
        section_branch = tree.add(f"[bold cyan]{section}[/bold cyan]")
        if isinstance(values, dict):
            for key, value in values.items():
                if any(marker in key.lower() for marker in _SENSITIVE_MARKERS) and not isinstance(value, bool):
                    display_value = "***" if value else "[dim]not set[/dim]"
                else:
                    display_value = escape(str(value))
                section_branch.add(f"[yellow]{key}[/yellow]: [white]{display_value}[/white]")
        else:
            section_branch.add(f"[white]{escape(str(values))}[/white]")

    return Panel(
        tree,
        title="[bold white on blue]Server Configuration[/bold white on blue]",
        border_style="bright_blue",
        box=box.DOUBLE,
        padding=(1, 2),
    )


def display_startup_banner(settings: Settings, host: str, port: int) -> None:
    console.print(create_startup_panel(startup_config(settings, host, port)))


def channel_table(rows: list[dict[str, str]]) -> Table:
    table = Table(title="Channels", box=box.SIMPLE_HEAVY)
    table.add_column("Name", style="bold cyan")
    table.add_column("Kind")
    table.add_column("Description")
    for row in rows:
        table.add_row(row["name"], row.get("kind", "public"), row.get("description", ""))
    return table
