from __future__ import annotations

import logging

from rich.logging import RichHandler

from streamarchive.LogConfig import configure_logging


def rich_handlers(logger: logging.Logger):
    return [h for h in logger.handlers if isinstance(h, RichHandler)]


def test_explicit_level(monkeypatch):
    monkeypatch.setenv("STREAMARCHIVE_LOG_LEVEL", "ERROR")

    logger = configure_logging("debug")

    assert logger.name == "streamarchive"
    assert logger.level == logging.DEBUG
    assert not logger.propagate


def test_level_from_environment(monkeypatch):
    monkeypatch.setenv("STREAMARCHIVE_LOG_LEVEL", "WARNING")
    assert configure_logging().level == logging.WARNING


def test_default_level(monkeypatch):
    monkeypatch.delenv("STREAMARCHIVE_LOG_LEVEL", raising=False)
    assert configure_logging().level == logging.INFO


def test_repeated_calls_do_not_stack_handlers():
    configure_logging("INFO")
    logger = configure_logging("INFO")

    assert len(rich_handlers(logger)) == 1
