#!/usr/bin/env python3
"""sharesync CLI - keep ZFS datasets and NFS exports matching configuration."""

import typer
from rich.console import Console

from sharesync.cli_status_commands import register_status_commands
from sharesync.cli_sync_commands import register_sync_commands

app = typer.Typer(
    name="sharesync",
    help="""sharesync - NFS share reconciliation for ZFS hosts

One YAML file declares pools, datasets and their NFS exports.

Quick start:
  sharesync drift                 # See what differs
  sharesync reconcile --dry-run   # See what would change
  sharesync reconcile             # Make it happen
  sharesync run                   # Follow host notifications on stdin
""",
    add_completion=False,
)

console = Console()

register_sync_commands(app, console)
register_status_commands(app, console)

if __name__ == "__main__":
    app()
