"""Observability helpers (structured logging)."""

from crdbhistory.observability.logging import get_logger, setup_logging

__all__ = ["get_logger", "setup_logging"]
