import asyncio

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from deckterm.client.reconnect import ConnectionState, ReconnectingTerminalClient
from deckterm.config import settings
from deckterm.services.persistence import PersistenceError, TmuxBackend, parse_session_name

console = Console()
err_console = Console(stderr=True)
cli_app = typer.Typer(name="deckterm", help="deckterm terminal server and admin CLI")


def _run_async(coro):
    """Run async code from sync CLI context."""
    return asyncio.run(coro)


def _backend() -> TmuxBackend:
    if not TmuxBackend.available(settings.deckterm_tmux_binary):
        console.print(f"[bold red]tmux binary not found:[/bold red] {settings.deckterm_tmux_binary}")
        raise typer.Exit(code=1)
    return TmuxBackend(
        prefix=settings.deckterm_tmux_prefix,
        binary=settings.deckterm_tmux_binary,
        command_timeout=settings.deckterm_tmux_command_timeout,
    )


@cli_app.command("serve")
def serve(
    host: str = typer.Option(None, "--host", help="Bind address (default: DECKTERM_HOST)"),
    port: int = typer.Option(None, "--port", help="Bind port (default: DECKTERM_PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Run the terminal server."""
    import uvicorn

    uvicorn.run(
        "deckterm.main:app",
        host=host or settings.deckterm_host,
        port=port or settings.deckterm_port,
        log_level=settings.deckterm_log_level.lower(),
        reload=reload,
    )


@cli_app.command("persisted")
def list_persisted():
    """List tmux sessions that belong to deckterm."""
    backend = _backend()
    sessions = _run_async(backend.list_existing())

    if not sessions:
        console.print("[dim]No persisted sessions found.[/dim]")
        return

    table = Table(title="Persisted Sessions")
    table.add_column("Name", style="cyan")
    table.add_column("Owner", style="green")
    table.add_column("Terminal ID")
    table.add_column("Size")
    table.add_column("Directory")

    for entry in sessions:
        parsed = parse_session_name(backend.prefix, entry.name)
        owner, session_id = parsed if parsed else ("?", "?")
        table.add_row(entry.name, owner, session_id, f"{entry.cols}x{entry.rows}", entry.cwd)

    console.print(table)


@cli_app.command("kill")
def kill_persisted(
    name: str = typer.Argument(help="Full tmux session name, as shown by 'persisted'"),
):
    """Kill one persisted session."""
    backend = _backend()
    if parse_session_name(backend.prefix, name) is None:
        console.print(f"[yellow]'{name}' is not a deckterm session name.[/yellow]")
        raise typer.Exit(code=1)

    try:
        _run_async(backend.kill(name))
    except PersistenceError as exc:
        console.print(f"[yellow]Could not kill '{name}': {exc}[/yellow]")
        raise typer.Exit(code=1)

    console.print(f"[bold red]Session {name} killed.[/bold red]")


@cli_app.command("watch")
def watch(
    url: str = typer.Argument(help="Stream URL, e.g. ws://localhost:4173/ws/terminals/<id>"),
    user: str = typer.Option(None, "--user", help="Value for the identity user header"),
):
    """Print a terminal's output, reconnecting across drops, until it ends."""
    headers = {settings.deckterm_auth_user_header: user} if user else {}

    def on_status(state: ConnectionState, info: dict) -> None:
        if state in (ConnectionState.RECONNECTING, ConnectionState.FAILED):
            err_console.print(f"[dim]{state.value}: {escape(str(info))}[/dim]")

    client = ReconnectingTerminalClient.from_settings(
        url,
        headers=headers,
        on_output=lambda text: console.out(text, end="", highlight=False),
        on_status=on_status,
    )
    final = _run_async(client.run())
    if client.end_frame:
        console.print(f"\n[bold]Terminal ended:[/bold] {client.end_frame}")
    if final == ConnectionState.FAILED:
        raise typer.Exit(code=1)


def main():
    cli_app()


if __name__ == "__main__":
    main()
