"""Logging setup and configuration."""

import io
import logging
import secrets
import shutil
import sys
import threading
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from core.logging.context import set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter

# Default settings
DEFAULT_LOG_DIR = Path("logs")
DEFAULT_ROTATION_WHEN = "midnight"
DEFAULT_ROTATION_INTERVAL = 1
DEFAULT_BACKUP_COUNT = 14
DEFAULT_CONSOLE_LEVEL = logging.INFO
DEFAULT_FILE_LEVEL = logging.DEBUG

# Ordinal instance IDs keep concurrent runs from sharing a log file
_instance_counter = 0
_instance_counter_lock = threading.Lock()


def _get_next_instance_id() -> str:
    """Get next instance ID as ordinal number (thread-safe)."""
    global _instance_counter
    with _instance_counter_lock:
        instance_id = str(_instance_counter)
        _instance_counter += 1
        return instance_id


# Noisy loggers to suppress
NOISY_LOGGERS = [
    "boto3",
    "botocore",
    "s3transfer",
    "urllib3",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
]


class ArchivingTimedRotatingFileHandler(TimedRotatingFileHandler):
    """
    TimedRotatingFileHandler that moves rotated files to an archive folder.

    When a log file is rotated (e.g., run.log -> run.log.2026-01-22), the
    backup file is moved to an 'archive' subdirectory to keep the main log
    directory clean.

    Example:
        Before rotation:
            logs/main/2026-01-05/archive_0105_1430_0.log

        After rotation (daily at midnight):
            logs/main/2026-01-05/archive_0105_1430_0.log (new file)
            logs/archive/main/2026-01-05/archive_0105_1430_0.log.2026-01-05
    """

    def __init__(
        self,
        filename,
        when="midnight",
        interval=1,
        backupCount=0,
        encoding=None,
        delay=False,
        utc=False,
        archive_dir=None,
    ):
        super().__init__(filename, when, interval, backupCount, encoding, delay, utc)
        if archive_dir:
            self.archive_dir = Path(archive_dir)
        else:
            log_path = Path(self.baseFilename)
            self.archive_dir = log_path.parent / "archive"

        self.archive_dir.mkdir(parents=True, exist_ok=True)

    def doRollover(self):
        super().doRollover()

        log_path = Path(self.baseFilename)
        log_dir = log_path.parent
        base_name = log_path.name

        # TimedRotatingFileHandler appends timestamps like .2026-01-22 to rotated files
        for rotated_file in log_dir.glob(f"{base_name}.*"):
            if rotated_file == log_path:
                continue

            archive_file = self.archive_dir / rotated_file.name
            try:
                shutil.move(str(rotated_file), str(archive_file))
            except OSError as e:
                # Not through logging: we are inside a handler
                print(
                    f"Warning: Failed to archive {rotated_file}: {e}", file=sys.stderr
                )


def get_log_file_path(
    log_dir: Path,
    group: str | None = None,
    stage: str | None = None,
    instance_id: str | None = None,
) -> Path:
    """
    Build log file path with group/date subfolder structure.

    Structure: {log_dir}/{group}/{YYYY-MM-DD}/{stage}_{MMDD}_{HHMM}_{n}.log

    Examples:
        logs/main/2026-01-05/archive_0105_1430_0.log
        logs/archiver/2026-01-05/archiver_0105_0930_1.log

    Args:
        log_dir: Base log directory
        group: Group name (defaults to "archiver" for whole-run logs)
        stage: Stage name used as filename prefix
        instance_id: Instance identifier (generated if not provided)

    Returns:
        Full path to log file
    """
    now = datetime.now()
    date_folder = now.strftime("%Y-%m-%d")
    date_str = now.strftime("%m%d")
    time_str = now.strftime("%H%M")

    folder = group or "archiver"
    base_name = f"{stage or folder}_{date_str}_{time_str}"

    phrase = instance_id or _get_next_instance_id()
    filename = f"{base_name}_{phrase}.log"

    return log_dir / folder / date_folder / filename


def setup_logging(
    name: str = "logarchive",
    stage: str | None = None,
    group: str | None = None,
    log_dir: Path | None = None,
    json_format: bool = True,
    console_level: int = DEFAULT_CONSOLE_LEVEL,
    file_level: int = DEFAULT_FILE_LEVEL,
    rotation_when: str = DEFAULT_ROTATION_WHEN,
    rotation_interval: int = DEFAULT_ROTATION_INTERVAL,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    suppress_noisy: bool = True,
    cycle_id: str | None = None,
    use_instance_id: bool = True,
    log_to_stdout: bool = False,
) -> logging.Logger:
    """
    Configure logging with console and auto-archiving rotating file handlers.

    Args:
        name: Logger name to return
        stage: Stage name used in the log filename and context
        group: Group name used as log subfolder and context
        log_dir: Directory for log files (default: ./logs)
        json_format: Use JSON format for file logs (default: True)
        console_level: Console handler level (default: INFO)
        file_level: File handler level (default: DEBUG)
        rotation_when: When to rotate logs - 'midnight', 'H' (hourly), 'M' (minutes)
        rotation_interval: Interval for rotation (default: 1)
        backup_count: Number of backup files to keep (default: 14)
        suppress_noisy: Quiet down AWS SDK and SQLAlchemy loggers
        cycle_id: Run identifier for context
        use_instance_id: Append an ordinal instance number to the log filename
        log_to_stdout: Send all log output to stdout only, skipping file handlers

    Returns:
        Configured logger instance
    """
    log_dir = log_dir or DEFAULT_LOG_DIR

    if cycle_id:
        set_log_context(cycle_id=cycle_id)
    if stage:
        set_log_context(stage=stage)
    if group:
        set_log_context(group=group)

    console_formatter = ConsoleFormatter()
    if sys.platform == "win32":
        safe_stdout = io.TextIOWrapper(
            sys.stdout.buffer, encoding="utf-8", errors="replace"
        )
        console_handler = logging.StreamHandler(safe_stdout)
    else:
        console_handler = logging.StreamHandler(sys.stdout)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    root_logger.handlers.clear()

    log_file: Path | None = None
    if log_to_stdout:
        console_handler.setLevel(min(console_level, file_level))
        console_handler.setFormatter(console_formatter)
        root_logger.addHandler(console_handler)
    else:
        console_handler.setLevel(console_level)
        console_handler.setFormatter(console_formatter)

        instance_id = _get_next_instance_id() if use_instance_id else None
        log_file = get_log_file_path(
            log_dir, group=group, stage=stage, instance_id=instance_id
        )
        log_file.parent.mkdir(parents=True, exist_ok=True)

        if json_format:
            file_formatter = JSONFormatter()
        else:
            file_formatter = logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
            )

        # Structure: logs/archive/group/date
        try:
            relative_path = log_file.relative_to(log_dir)
            archive_dir = log_dir / "archive" / relative_path.parent
        except ValueError:
            archive_dir = log_file.parent / "archive"

        file_handler = ArchivingTimedRotatingFileHandler(
            log_file,
            when=rotation_when,
            interval=rotation_interval,
            backupCount=backup_count,
            encoding="utf-8",
            archive_dir=archive_dir,
        )
        file_handler.setLevel(file_level)
        file_handler.setFormatter(file_formatter)

        root_logger.addHandler(file_handler)
        root_logger.addHandler(console_handler)

    if suppress_noisy:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    logger = logging.getLogger(name)
    if log_file is None:
        logger.debug("Logging initialized: stdout-only mode")
    else:
        logger.debug(
            "Logging initialized: file=%s, json=%s",
            log_file,
            json_format,
            extra={"local_path": str(log_file)},
        )

    return logger


def detect_log_output_mode() -> str:
    """
    Detect current log output mode by inspecting active logging handlers.

    Returns:
        "file+stdout", "stdout" or "console" (no handlers configured yet)
    """
    handlers = logging.getLogger().handlers
    has_file = any(isinstance(h, logging.FileHandler) for h in handlers)
    if has_file:
        return "file+stdout"
    return "stdout" if handlers else "console"


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Use this instead of logging.getLogger() to ensure consistent naming.
    """
    return logging.getLogger(name)


def generate_cycle_id() -> str:
    """
    Generate unique run identifier.

    Format: c-YYYYMMDD-HHMMSS-XXXX where XXXX is random hex.
    """
    ts = datetime.now().strftime("%Y%m%d-%H%M%S")
    suffix = secrets.token_hex(2)
    return f"c-{ts}-{suffix}"
