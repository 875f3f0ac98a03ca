"""structlog configuration for the provisioner process."""
from __future__ import annotations

import logging
import sys
from typing import Optional, TextIO

import structlog

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

# Log file opened by the last configure_logging() call, if any.
_log_file: Optional[TextIO] = None


def close_log_file() -> None:
    """Close the log file, if any, and send further output to stderr."""
    global _log_file
    if _log_file is not None:
        structlog.configure(logger_factory=structlog.PrintLoggerFactory(file=sys.stderr))
        _log_file.close()
        _log_file = None


def configure_logging(level: str = "info", fmt: str = "json", file: Optional[str] = None) -> None:
    """Configure structlog once at startup.

    ``fmt`` is ``json`` (one JSON object per line) or ``text`` (console
    renderer without colours). Output goes to stderr unless *file* is given,
    in which case it is appended to that file. A file opened by an earlier
    call is closed. Raises ``OSError`` if *file* cannot be opened; the
    previous configuration stays in place in that case.
    """
    global _log_file
    stream: TextIO = sys.stderr
    if file:
        stream = open(file, "a", encoding="utf-8")  # noqa: SIM115
    previous, _log_file = _log_file, (stream if file else None)

    renderer = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS.get(level.lower(), logging.INFO)),
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )
    if previous is not None:
        previous.close()
