"""
Structured logging module.

Provides JSON logging with context propagation.
"""

from core.logging.context import (
    clear_log_context,
    get_log_context,
    set_log_context,
)
from core.logging.formatters import ConsoleFormatter, JSONFormatter
from core.logging.periodic_logger import PeriodicStatsLogger
from core.logging.setup import (
    get_log_file_path,
    setup_logging,
)
from core.logging.utilities import (
    format_cycle_output,
    log_startup_banner,
    log_worker_error,
)

__all__ = [
    # Setup
    "setup_logging",
    "get_log_file_path",
    # Formatters
    "JSONFormatter",
    "ConsoleFormatter",
    # Context
    "set_log_context",
    "get_log_context",
    "clear_log_context",
    # Periodic output
    "PeriodicStatsLogger",
    # Utilities
    "format_cycle_output",
    "log_startup_banner",
    "log_worker_error",
]
