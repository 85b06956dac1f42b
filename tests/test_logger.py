"""Tests for sharesync logging setup."""
import logging

from rich.logging import RichHandler

from sharesync.core import logger as sharesync_logger
from sharesync.core.logger import PACKAGE_LOGGER, get_logger


def test_module_loggers_propagate_to_package_handler():
    log = get_logger("sharesync.core.engine")
    get_logger("sharesync.backends.zfs")

    package = logging.getLogger(PACKAGE_LOGGER)
    rich_handlers = [h for h in package.handlers if isinstance(h, RichHandler)]
    assert len(rich_handlers) == 1
    assert log.handlers == []
    assert log.propagate


def test_log_level_from_environment(monkeypatch):
    monkeypatch.setenv("SHARESYNC_LOG_LEVEL", "warning")
    assert sharesync_logger._level(False) == logging.WARNING
    assert sharesync_logger._level(True) == logging.DEBUG


def test_unknown_log_level_falls_back_to_info(monkeypatch):
    monkeypatch.setenv("SHARESYNC_LOG_LEVEL", "chatty")
    assert sharesync_logger._level(False) == logging.INFO


def test_unwritable_log_file_falls_back_to_tmp(tmp_path, monkeypatch):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    fallback = tmp_path / "fallback.log"
    monkeypatch.setattr(sharesync_logger, "FALLBACK_LOG_FILE", fallback)

    handler = sharesync_logger._open_log_file(str(blocker / "sub" / "sharesync.log"))
    try:
        assert handler.baseFilename == str(fallback)
    finally:
        handler.close()
