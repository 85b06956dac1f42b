"""Logging for sharesync: rich console output plus an optional daemon log file.

All loggers live under the ``sharesync`` namespace. The console handler is
installed once on that package logger, so module loggers only propagate.
"""
import logging
import os
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

console = Console()

PACKAGE_LOGGER = "sharesync"
LOG_FILE = Path("/var/log/sharesync/sharesync.log")
FALLBACK_LOG_FILE = Path("/tmp/sharesync.log")

# Worker threads interleave; the thread name tells keys apart in the file.
FILE_FORMAT = "%(asctime)s %(threadName)-20s %(levelname)-7s %(name)s: %(message)s"

_file_handler: Optional[logging.Handler] = None


def _level(verbose: bool) -> int:
    if verbose:
        return logging.DEBUG
    level = logging.getLevelName(os.environ.get("SHARESYNC_LOG_LEVEL", "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def _package_logger() -> logging.Logger:
    root = logging.getLogger(PACKAGE_LOGGER)
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(console=console, show_path=False, rich_tracebacks=True)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(handler)
        root.setLevel(_level(False))
    return root


def _open_log_file(log_file: Optional[str]) -> logging.FileHandler:
    """Open the requested log file, falling back to /tmp when it is not writable."""
    target = Path(log_file) if log_file else LOG_FILE
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(target)
    except OSError:
        return logging.FileHandler(FALLBACK_LOG_FILE)


def setup_file_logging(log_file: Optional[str] = None, verbose: bool = False) -> None:
    """Mirror sharesync logs into a file. Only the first call takes effect."""
    global _file_handler
    if _file_handler is not None:
        return

    root = _package_logger()
    handler = _open_log_file(log_file)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handler.setLevel(_level(verbose))
    root.addHandler(handler)
    root.setLevel(_level(verbose))
    _file_handler = handler

    root.info(f"Logging to {handler.baseFilename}")


def get_logger(name: str) -> logging.Logger:
    """Logger for a sharesync module (``__name__``)."""
    _package_logger()
    return logging.getLogger(name)
