"""Logging configuration for crawler processes.

Every process (supervisor and each worker) calls :func:`configure_logging`
once at startup. Records are rendered as JSON lines by ``structlog`` on top
of stdlib ``logging``. Optional activity and error files receive the same
lines; the error file only gets warnings and above.

Components do not log through a process-wide logger for per-job events.
They receive a bound logger (see :func:`bind_worker_logger`) from whoever
constructs them.
"""

from __future__ import annotations

import json
import logging
from functools import partial
from pathlib import Path

import structlog

get_logger = structlog.get_logger

_FILE_HANDLER_ATTR = "_crawler_file_handler"


def _file_handler(path: str, level: int) -> logging.Handler:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(target, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    setattr(handler, _FILE_HANDLER_ATTR, True)
    return handler


def configure_logging(
    level: str | int = "INFO",
    log_file: str | None = None,
    error_log_file: str | None = None,
) -> None:
    """Configure stdlib logging and structlog.

    Calling it again replaces the file handlers installed by a previous
    call, so tests and restarted workers do not accumulate duplicates.
    """

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format="%(message)s")
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        if getattr(handler, _FILE_HANDLER_ATTR, False):
            root.removeHandler(handler)
            handler.close()
    if log_file:
        root.addHandler(_file_handler(log_file, level))
    if error_log_file:
        root.addHandler(_file_handler(error_log_file, max(level, logging.WARNING)))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(
                serializer=partial(json.dumps, ensure_ascii=False, default=str)
            ),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def bind_worker_logger(kind: str, index: int, **extra):
    """Return a logger tagged with the worker identity, e.g. ``fetch-2``."""

    return structlog.get_logger("crawler.worker").bind(worker=f"{kind}-{index}", **extra)
