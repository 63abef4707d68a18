"""Logging infrastructure for liveflow.

Structured JSON logging with run/table context propagation.
"""

from liveflow.logging.filters import (
    ContextFilter,
    clear_run_context,
    set_logging_context,
    set_run_context,
    set_table_context,
)
from liveflow.logging.logger import CustomJsonFormatter, get_logger, setup_logging

__all__ = [
    "get_logger",
    "setup_logging",
    "CustomJsonFormatter",
    "ContextFilter",
    "set_logging_context",
    "set_run_context",
    "set_table_context",
    "clear_run_context",
]
