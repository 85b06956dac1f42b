"""Reconciliation CLI commands: reconcile, drift, run."""
import json
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from sharesync.core.drift_engine import DriftReport, DriftSeverity, summarize_drift_report
from sharesync.core.errors import BackpressureError
from sharesync.core.retry import retry

console: Console = Console()

SEVERITY_STYLES = {
    DriftSeverity.DANGEROUS: "red",
    DriftSeverity.AUTO_MERGE: "yellow",
    DriftSeverity.INFO: "cyan",
}


def _make_supervisor(config: Optional[str], dry_run: bool, prune: bool = True):
    from sharesync.cli_support import build_backend, find_config
    from sharesync.config.loader import ConfigLoader
    from sharesync.core.config import get_settings
    from sharesync.core.reconciler import ReconciliationPolicy
    from sharesync.core.status_store import StatusStore
    from sharesync.core.supervisor import Supervisor

    settings = get_settings()
    return Supervisor(
        build_backend(dry_run=dry_run),
        loader=ConfigLoader(find_config(config)),
        settings=settings,
        policy=ReconciliationPolicy(prune_orphans=prune),
        status_store=None if dry_run else StatusStore(Path(settings.status_file)),
    )


def display_drift(report: DriftReport) -> None:
    table = Table(title="Drift", show_lines=False)
    table.add_column("Severity")
    table.add_column("Resource")
    table.add_column("Field")
    table.add_column("Details")
    for item in report.items:
        style = SEVERITY_STYLES.get(item.severity, "white")
        table.add_row(
            f"[{style}]{item.severity}[/{style}]",
            f"{item.resource_type}:{item.identifier}",
            item.field,
            item.message,
        )
    console.print(table)


def display_status(statuses, out: Optional[Console] = None) -> None:
    table = Table(title="Reconciliation status")
    table.add_column("Key")
    table.add_column("State")
    table.add_column("Attempts", justify="right")
    table.add_column("Last error")
    for key, status in statuses.items():
        data = status if isinstance(status, dict) else status.to_dict()
        state = data["state"]
        colour = "red" if state == "failed" else "yellow" if state == "retrying" else "green"
        error = ""
        if data.get("last_error"):
            error = f"{data['last_error_class']}: {data['last_error']}"
        table.add_row(key, f"[{colour}]{state}[/{colour}]", str(data["attempts"]), error)
    (out or console).print(table)


def reconcile(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Config file path"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would change without changing it"),
    prune: bool = typer.Option(True, "--prune/--no-prune", help="Destroy managed datasets missing from config"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Run one full reconciliation pass and exit."""
    from sharesync.cli_support import (
        handle_cli_error,
        print_error,
        print_success,
        print_warning,
        setup_file_logging,
    )

    setup_file_logging(log_file=log_file, verbose=verbose)

    try:
        supervisor = _make_supervisor(config, dry_run=dry_run, prune=prune)
        plan = supervisor.reconcile()
    except Exception as e:
        handle_cli_error(e, console, verbose)

    if supervisor.report.is_clean():
        print_success(console, "No drift detected - backend matches configuration")
    else:
        display_drift(supervisor.report)

    if dry_run:
        print_warning(console, f"DRY RUN - {len(plan.events())} corrective event(s) not applied")

    statuses = supervisor.engine.status()
    if statuses:
        display_status(statuses)
    failed = supervisor.engine.failed_keys()
    if failed:
        print_error(console, f"{len(failed)} key(s) failed: {', '.join(failed)}")
        raise typer.Exit(1)


def drift(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Config file path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Show drift between configuration and the host. Changes nothing."""
    from sharesync.cli_support import handle_cli_error, print_success, setup_file_logging

    setup_file_logging(log_file=log_file, verbose=verbose)

    try:
        report = _make_supervisor(config, dry_run=True).check_drift()
    except Exception as e:
        handle_cli_error(e, console, verbose)

    if report.is_clean():
        print_success(console, "No drift detected - backend matches configuration")
        return
    display_drift(report)
    summary = summarize_drift_report(report)
    counts = ", ".join(f"{count} {severity}" for severity, count in sorted(summary["counts"].items()))
    console.print(f"\n[bold]Summary:[/bold] {counts}")


def run(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Config file path"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Log intended changes only"),
    prune: bool = typer.Option(True, "--prune/--no-prune", help="Destroy managed datasets missing from config"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Reconcile, then apply host notifications read as JSON lines from stdin.

    Each line is either a notification
    {"type": "create", "datapath": "...nfs.shares.share", "payload": {...}}
    or an operator command {"resync": "tank/media"}.
    """
    from sharesync.cli_support import (
        handle_cli_error,
        print_info,
        print_warning,
        setup_file_logging,
    )
    from sharesync.core.errors import SharesyncError

    setup_file_logging(log_file=log_file, verbose=verbose)

    try:
        supervisor = _make_supervisor(config, dry_run=dry_run, prune=prune)
        supervisor.start()
    except Exception as e:
        handle_cli_error(e, console, verbose)

    notify = retry(max_attempts=5, delay=0.2, exceptions=(BackpressureError,))(
        supervisor.notifier()
    )
    print_info(console, "Listening for notifications on stdin")

    try:
        for line_number, line in enumerate(sys.stdin, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
                if "resync" in message:
                    supervisor.resync(message["resync"])
                    continue
                notify(
                    message["type"],
                    message["datapath"],
                    message.get("payload"),
                    message.get("sequence"),
                )
            except (ValueError, KeyError, TypeError, SharesyncError) as e:
                print_warning(console, f"line {line_number}: {e}")
    except KeyboardInterrupt:
        print_info(console, "Interrupted, shutting down")
    finally:
        supervisor.wait_idle(timeout=5)
        dropped = supervisor.shutdown()
        if dropped:
            print_warning(console, f"{len(dropped)} undelivered event(s) dropped, see status file")


def register_sync_commands(app: typer.Typer, shared_console: Console):
    """Register reconciliation commands with the main Typer app."""
    global console
    console = shared_console

    app.command()(reconcile)
    app.command()(drift)
    app.command()(run)
