"""
Structured logging module.

Provides JSON logging with run/stage/group/partition context propagation.
"""

from core.logging.context import (
    clear_log_context,
    get_log_context,
    set_log_context,
)
from core.logging.context_managers import (
    LogContext,
    StageLogContext,
    log_phase,
)
from core.logging.formatters import ConsoleFormatter, JSONFormatter
from core.logging.periodic_logger import ProgressLogger
from core.logging.setup import (
    detect_log_output_mode,
    generate_cycle_id,
    get_log_file_path,
    get_logger,
    setup_logging,
)
from core.logging.utilities import (
    format_batch_output,
    format_progress,
    log_exception,
    log_startup_banner,
    log_with_context,
)

__all__ = [
    # Setup
    "setup_logging",
    "get_logger",
    "generate_cycle_id",
    "get_log_file_path",
    "detect_log_output_mode",
    # Formatters
    "JSONFormatter",
    "ConsoleFormatter",
    # Context
    "set_log_context",
    "get_log_context",
    "clear_log_context",
    # Context Managers
    "LogContext",
    "StageLogContext",
    "log_phase",
    # Progress
    "ProgressLogger",
    # Utilities
    "log_with_context",
    "log_exception",
    "log_startup_banner",
    "format_batch_output",
    "format_progress",
]
