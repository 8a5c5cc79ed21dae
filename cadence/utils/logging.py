"""Structured logging setup for Cadence.

Log lines go to a console stream and, when ``logging.file`` is set, to a
line-buffered file. In prompt mode the console stream is stderr so the
reply written to stdout stays clean.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import IO, Any

import structlog
from structlog.types import Processor

from .config import Settings, get_settings


class _MultiStreamLogger:
    """Writes each rendered line to every attached stream."""

    def __init__(self, streams: list[IO[str]]) -> None:
        self._streams = streams

    def msg(self, message: str) -> None:
        for stream in self._streams:
            stream.write(message + "\n")
            stream.flush()

    log = debug = info = warn = warning = msg
    fatal = failure = err = error = critical = msg


class _MultiStreamLoggerFactory:
    def __init__(self, console: IO[str], log_file: Path | None) -> None:
        self._streams: list[IO[str]] = [console]
        if log_file is not None:
            self._streams.append(open(log_file, "a", buffering=1))

    def __call__(self, *args: Any, **kwargs: Any) -> _MultiStreamLogger:
        return _MultiStreamLogger(self._streams)


def _level(name: str) -> int:
    value = logging.getLevelName(name.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {name}")
    return value


def setup_logging(
    level: str | None = None,
    format_type: str | None = None,
    settings: Settings | None = None,
    console: IO[str] | None = None,
) -> None:
    """
    Set up structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: Output format ('json' or 'text')
        settings: Settings to read defaults from (cached settings if omitted)
        console: Stream for console output (stdout if omitted)
    """
    settings = settings or get_settings()
    log_config = settings.logging
    log_level = _level(level or log_config.level)
    log_format = format_type or log_config.format
    console = console or sys.stdout

    log_file: Path | None = None
    handlers: list[logging.Handler] = [logging.StreamHandler(console)]
    if log_config.file:
        log_file = Path(log_config.file).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=log_config.max_size_mb * 1024 * 1024,
                backupCount=log_config.backup_count,
            )
        )

    # Third-party libraries (slack_bolt, httpx, the LLM SDKs) log through stdlib
    logging.basicConfig(format="%(message)s", level=log_level, handlers=handlers, force=True)
    quiet_level = max(log_level, _level(log_config.quiet_level))
    for name in log_config.quiet_loggers:
        logging.getLogger(name).setLevel(quiet_level)

    # merge_contextvars picks up session_id / provider / attempt bound per stream session
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        # No ANSI colors, the same lines end up in the log file
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=False),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=_MultiStreamLoggerFactory(console, log_file),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, usually ``get_logger(__name__)``."""
    return structlog.get_logger(name)
