"""Structured logging for crdbhistory, rendered as JSON lines via structlog."""

from __future__ import annotations

import logging
import sys

import structlog

_VALID_LEVELS = ("debug", "info", "warning", "error")


def setup_logging(level: str = "info") -> None:
    """Route every logger through structlog's JSON renderer on stderr.

    Unknown level names fall back to ``info``.
    """
    if level.lower() not in _VALID_LEVELS:
        level = "info"
    log_level = getattr(logging, level.upper())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str, **context: object) -> structlog.stdlib.BoundLogger:
    """Return a logger bound with a component name and any extra context.

    Collectors pass ``source_id=...`` so every line they emit is attributable
    to one monitored cluster.
    """
    return structlog.get_logger(component=component, **context)  # type: ignore[return-value]
