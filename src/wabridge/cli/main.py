"""Bridge CLI: run the bridge and inspect a running instance."""

from __future__ import annotations

import httpx
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

app = typer.Typer(
    name="wabridge",
    help="WhatsApp ↔ Telegram bridge",
    no_args_is_help=True,
    add_completion=False,
)

console = Console()

DEFAULT_URL = "http://localhost:3000"

_STATE_STYLES = {
    "ready": "green",
    "connecting": "yellow",
    "authenticating": "yellow",
    "disconnected": "red",
    "fatally_failed": "bold red",
}


def _get_client(base_url: str, api_key: str | None) -> httpx.Client:
    headers = {}
    if api_key:
        headers["X-API-Key"] = api_key
    return httpx.Client(base_url=base_url, headers=headers, timeout=10.0)


def _format_uptime(seconds: int) -> str:
    hours, rest = divmod(max(0, seconds), 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours}h {minutes}m {secs}s"


@app.command()
def serve() -> None:
    """Start the bridge (configuration comes from BRIDGE_* env vars and bridge.yaml)."""
    from wabridge.main import main as run_server

    console.print(Panel("🌉 Starting WhatsApp ↔ Telegram bridge...", border_style="blue"))
    run_server()


@app.command()
def status(
    base_url: str = typer.Option(DEFAULT_URL, "--url", "-u", envvar="BRIDGE_URL"),
    api_key: str = typer.Option("", "--api-key", "-k", envvar="BRIDGE_API_KEY"),
) -> None:
    """Show reconnect state and queue depth of a running bridge."""
    client = _get_client(base_url, api_key or None)

    try:
        resp = client.get("/status")
        resp.raise_for_status()
    except httpx.ConnectError:
        console.print(f"[red]✗[/red] Bridge is not running at {base_url}")
        raise typer.Exit(1)
    except httpx.HTTPStatusError as e:
        console.print(f"[red]Error {e.response.status_code}:[/red] {e.response.text}")
        raise typer.Exit(1)

    data = resp.json()
    state = data.get("whatsapp_state", "?")
    style = _STATE_STYLES.get(state, "white")

    table = Table(title="🌉 Bridge Status", show_header=False, border_style="blue")
    table.add_column("Key", style="bold")
    table.add_column("Value")

    table.add_row("Version", data.get("version", "?"))
    table.add_row("Uptime", _format_uptime(int(data.get("uptime_seconds", 0))))
    table.add_row("WhatsApp", f"[{style}]{state}[/{style}]")
    table.add_row(
        "Reconnect attempts",
        f"{data.get('reconnect_attempts', 0)}/{data.get('max_reconnect_attempts', '?')}",
    )
    table.add_row("Last activity", data.get("last_activity", "?"))
    table.add_row("Telegram polling", "[green]yes[/green]" if data.get("telegram_connected") else "[red]no[/red]")
    if data.get("telegram_last_error"):
        table.add_row("Telegram last error", data["telegram_last_error"])

    for key, label in (("telegram_queue", "Telegram queue"), ("whatsapp_queue", "WhatsApp queue")):
        queue = data.get(key) or {}
        table.add_row(
            label,
            f"pending {queue.get('pending', 0)}  │  delivered {queue.get('delivered', 0)}"
            f"  │  abandoned {queue.get('abandoned', 0)}",
        )

    console.print()
    console.print(table)
    console.print()


@app.command()
def ping(
    base_url: str = typer.Option(DEFAULT_URL, "--url", "-u", envvar="BRIDGE_URL"),
) -> None:
    """Check that the bridge answers."""
    client = _get_client(base_url, None)
    try:
        resp = client.get("/ping")
        resp.raise_for_status()
    except httpx.HTTPError:
        console.print(f"[red]✗[/red] No answer from {base_url}")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] {resp.text}")


@app.command()
def version() -> None:
    """Show bridge version."""
    from wabridge import __version__

    console.print(f"🌉 wabridge v{__version__}")


def main() -> None:
    """Entrypoint."""
    app()


if __name__ == "__main__":
    main()
