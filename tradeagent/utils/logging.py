"""structlog setup: console renderer for a terminal, JSON lines for a server."""

from __future__ import annotations

import logging
import os
import sys

import structlog

NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler", "telegram", "anthropic")


def _json_requested() -> bool:
    return os.environ.get("JSON_LOGS", "").strip().lower() in ("1", "true", "yes")


def setup_logging(log_level: str = "INFO", json_logs: bool | None = None) -> None:
    """Configure structlog. `json_logs` defaults to the JSON_LOGS env var."""
    if json_logs is None:
        json_logs = _json_requested()
    level = getattr(logging, log_level.upper(), logging.INFO)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if json_logs:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors += [structlog.dev.set_exc_info, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Library loggers go through stdlib logging
    logging.basicConfig(level=level, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
