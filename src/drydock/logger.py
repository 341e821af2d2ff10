"""Structured logging for drydock.

The logger is configured at import time from the environment (``LOG_LEVEL``,
``LOG_FORMAT``) because Settings loading itself logs. Once Settings exist,
:func:`configure_logging` applies ``settings.logging.level``.

Worker pods ship stderr to a log collector, so ``LOG_FORMAT=json`` switches
the renderer to one JSON object per line. Anything logged inside
:func:`bound_context` (including tasks spawned there) carries the bound keys,
which is how every line of a job ends up tagged with ``run_id`` and ``job``.
"""

from __future__ import annotations

import contextlib
import logging
import os
import sys
from collections.abc import Iterator
from typing import Any

import structlog

# Third-party clients that log every request at INFO
_NOISY_LOGGERS = ("kubernetes", "urllib3", "google", "httpx", "mcp")


def _level_from_name(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def _quiet_noisy_loggers(level: int) -> None:
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def _renderer_processors(log_format: str) -> list[Any]:
    if log_format == "json":
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]


def _setup_logging() -> structlog.stdlib.BoundLogger:
    level = _level_from_name(os.environ.get("LOG_LEVEL", "INFO"))
    log_format = os.environ.get("LOG_FORMAT", "console").lower()

    # structlog's filter_by_level defers to the stdlib root logger
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)
    _quiet_noisy_loggers(level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            *_renderer_processors(log_format),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


logger = _setup_logging()


def configure_logging(level: str) -> None:
    """Apply a level from Settings after startup.

    Only the stdlib levels change; ``filter_by_level`` reads them on every
    call, so cached loggers pick the new level up immediately.
    """
    numeric = _level_from_name(level)
    logging.getLogger().setLevel(numeric)
    _quiet_noisy_loggers(numeric)


@contextlib.contextmanager
def bound_context(**values: Any) -> Iterator[None]:
    """Bind key/values to every log line emitted in this context."""
    tokens = structlog.contextvars.bind_contextvars(**values)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)


def _uncaught_exception_handler(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _uncaught_exception_handler
