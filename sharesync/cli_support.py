"""Shared utilities for sharesync CLI modules."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from sharesync.backends import BackendAdapter, DryRunBackend, ZfsBackend
from sharesync.core.config import get_settings

# Default config search paths (ordered by proximity to current run)
CONFIG_PATHS = [
    "./sharesync.yml",
    str(Path.home() / "sharesync" / "sharesync.yml"),
    "/etc/sharesync/sharesync.yml",
]


def find_config(config_path: Optional[str] = None) -> str:
    """Locate the active share configuration file."""
    if config_path:
        return config_path

    if env_config := os.environ.get("SHARESYNC_CONFIG"):
        return env_config

    for path in CONFIG_PATHS:
        if Path(path).exists():
            return path

    return "sharesync.yml"


def is_mock() -> bool:
    """Return True when the CLI runs in mock mode."""
    return os.environ.get("SHARESYNC_MOCK", "").lower() in ("1", "true")


def setup_file_logging(log_file: Optional[str] = None, verbose: bool = False) -> None:
    from sharesync.core.logger import setup_file_logging as _setup_file_logging
    _setup_file_logging(log_file=log_file, verbose=verbose)


def build_backend(dry_run: bool = False) -> BackendAdapter:
    """Real ZFS backend, or a dry-run wrapper around it.

    In mock mode nothing on the host is read either.
    """
    if is_mock():
        return DryRunBackend()
    zfs = ZfsBackend(command_timeout=get_settings().command_timeout)
    return DryRunBackend(source=zfs) if dry_run else zfs


def handle_cli_error(
    e: Exception,
    console: Console,
    verbose: bool = False,
    exit_code: int = 1
) -> None:
    """Print an error consistently and exit."""
    console.print(f"[red]Error:[/red] {e}")
    if verbose:
        console.print_exception()
    raise typer.Exit(exit_code)


def print_success(console: Console, message: str, prefix: str = "✓") -> None:
    console.print(f"[green]{prefix}[/green] {message}")


def print_error(console: Console, message: str, prefix: str = "✗") -> None:
    console.print(f"[red]{prefix}[/red] {message}")


def print_warning(console: Console, message: str, prefix: str = "⚠") -> None:
    console.print(f"[yellow]{prefix}[/yellow] {message}")


def print_info(console: Console, message: str, prefix: str = "ℹ") -> None:
    console.print(f"[cyan]{prefix}[/cyan] {message}")
