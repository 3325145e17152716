"""Logging utility functions."""

import logging
from typing import Any

# Reserved LogRecord attribute names that cannot be used in extra dict
_RESERVED_LOG_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "created",
        "asctime",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "message",
        "exc_info",
        "exc_text",
        "stack_info",
    }
)


def log_with_context(
    logger: logging.Logger,
    level: int,
    msg: str,
    **kwargs: Any,
) -> None:
    """
    Log with structured context fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: Additional context fields (date_key, duration_ms, etc.)
                  Note: exc_info=True is supported and handled specially.

    Example:
        log_with_context(
            logger, logging.INFO, "Partition fetched",
            date_key=partition.date_key,
            objects_total=len(keys),
        )
    """
    # exc_info is a direct parameter to log(), not extra
    exc_info = kwargs.pop("exc_info", None)

    extra = {k: v for k, v in kwargs.items() if k not in _RESERVED_LOG_KEYS}

    logger.log(level, msg, exc_info=exc_info, extra=extra)


def log_exception(
    logger: logging.Logger,
    exc: BaseException,
    msg: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **kwargs: Any,
) -> None:
    """
    Log exception with context and optional traceback.

    Automatically extracts error_category from PipelineError subclasses.

    Args:
        logger: Logger instance
        exc: Exception to log
        msg: Context message
        level: Log level (default: ERROR)
        include_traceback: Include full traceback (default: True)
        **kwargs: Additional context fields

    Example:
        try:
            await fetcher.fetch(partition)
        except FetchError as e:
            log_exception(logger, e, "Partition fetch failed", date_key=partition.date_key)
    """
    error_category = kwargs.get("error_category")
    if error_category is None and hasattr(exc, "category"):
        cat = exc.category
        kwargs["error_category"] = cat.value if hasattr(cat, "value") else str(cat)

    error_msg = str(exc)
    if len(error_msg) > 500:
        error_msg = error_msg[:500] + "..."
    kwargs["error_message"] = error_msg
    kwargs.setdefault("error_type", type(exc).__name__)

    extra = {k: v for k, v in kwargs.items() if k not in _RESERVED_LOG_KEYS}

    if include_traceback:
        logger.log(level, msg, exc_info=exc, extra=extra)
    else:
        logger.log(level, msg, extra=extra)


def format_batch_output(
    batch_index: int,
    succeeded: int,
    failed: int,
    records: int,
    incomplete: int = 0,
    total_batches: int | None = None,
) -> str:
    """
    Format standardized batch summary output.

    Example:
        >>> format_batch_output(0, 98, 2, 15300, total_batches=3)
        'Batch 1/3: 98 succeeded, 2 failed | records=15300'
        >>> format_batch_output(1, 90, 10, 12000, incomplete=7)
        'Batch 2: 90 succeeded, 10 failed (7 incomplete) | records=12000'
    """
    label = f"Batch {batch_index + 1}"
    if total_batches is not None:
        label = f"{label}/{total_batches}"

    failed_part = f"{failed} failed"
    if incomplete > 0:
        failed_part = f"{failed_part} ({incomplete} incomplete)"

    return f"{label}: {succeeded} succeeded, {failed_part} | records={records}"


def format_progress(
    completed: int,
    total: int,
    elapsed_seconds: float,
) -> tuple[str, float, float | None]:
    """
    Format throughput/ETA progress for a running stage.

    Returns:
        (message, rate_per_sec, eta_seconds); eta is None until a rate is known.

    Example:
        >>> format_progress(50, 200, 10.0)[0]
        '50/200 (25.0%) | 5.0/s | eta 30s'
    """
    rate = completed / elapsed_seconds if elapsed_seconds > 0 else 0.0
    remaining = max(total - completed, 0)
    eta = remaining / rate if rate > 0 else None
    percent = (completed / total * 100) if total else 100.0

    eta_part = f"eta {eta:.0f}s" if eta is not None else "eta n/a"
    message = f"{completed}/{total} ({percent:.1f}%) | {rate:.1f}/s | {eta_part}"
    return message, rate, eta


_BANNER_FIELDS: list[tuple[str, str]] = [
    ("cycle_id", "Run:          {}"),
    ("config_path", "Config:       {}"),
    ("groups", "Groups:       {}"),
    ("merge_strategy", "Merge:        {}"),
    ("archive_writer", "Archive:      {}"),
    ("log_output_mode", "Log Output:   {}"),
]


def log_startup_banner(
    logger: logging.Logger,
    title: str,
    **kwargs: Any,
) -> None:
    """
    Log startup banner with run configuration.

    Args:
        logger: Logger instance
        title: Banner title (e.g., "CDN Log Archiver")
        **kwargs: Optional fields: cycle_id, config_path, groups, merge_strategy,
            archive_writer, log_output_mode, version
    """
    separator = "=" * 50

    lines = ["", separator, title]

    version = kwargs.get("version")
    if version:
        lines.append(f"Version: {version}")

    lines.append(separator)

    for field_name, fmt in _BANNER_FIELDS:
        value = kwargs.get(field_name)
        if value:
            lines.append(fmt.format(value))

    lines.append(separator)
    lines.append("")

    logger.info("\n".join(lines))
