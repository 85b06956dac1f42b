"""Status CLI command."""
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

console: Console = Console()


def status(
    status_file: Optional[str] = typer.Option(None, "--status-file", help="Status file path"),
):
    """Show per-dataset reconciliation state from the last run."""
    from sharesync.cli_support import print_info, print_warning
    from sharesync.cli_sync_commands import display_status
    from sharesync.core.config import get_settings
    from sharesync.core.status_store import StatusStore

    path = Path(status_file or get_settings().status_file)
    if not path.exists():
        print_info(console, f"No status recorded yet ({path})")
        raise typer.Exit(0)

    state = StatusStore(path).state
    console.print(
        f"Backend: [bold]{state.get('backend')}[/bold]  "
        f"NFS service: [bold]{'enabled' if state.get('service_enabled') else 'disabled'}[/bold]  "
        f"Updated: {state.get('updated_at')}"
    )
    if state.get("keys"):
        display_status(state["keys"], console)
    counts = (state.get("drift") or {}).get("counts")
    if counts:
        print_info(console, "Startup drift: " + ", ".join(f"{n} {s}" for s, n in counts.items()))
    for identity, count in (state.get("pending") or {}).items():
        print_warning(console, f"{count} event(s) waiting for {identity}")
    dropped = state.get("dropped_events") or []
    if dropped:
        print_warning(console, f"{len(dropped)} event(s) were dropped at shutdown")
    failed = [k for k, v in (state.get("keys") or {}).items() if v.get("state") == "failed"]
    if failed:
        raise typer.Exit(1)


def register_status_commands(app: typer.Typer, shared_console: Console):
    """Register the status command with the main Typer app."""
    global console
    console = shared_console

    app.command()(status)
