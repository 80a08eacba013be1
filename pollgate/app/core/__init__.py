"""Core utilities for pollgate."""

from pollgate.app.core.clock import Clock, now_ms
from pollgate.app.core.config import settings
from pollgate.app.core.logging import get_log_context, get_logger, setup_logging

__all__ = [
    "Clock",
    "now_ms",
    "settings",
    "get_logger",
    "get_log_context",
    "setup_logging",
]
