"""Log archiver run entry point. Use --help for usage."""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from config.config import ArchiverConfig, load_config, resolve_config_path
from core.errors.exceptions import ConfigurationError
from core.logging.setup import detect_log_output_mode, generate_cycle_id, setup_logging
from core.logging.utilities import log_startup_banner
from core.utils.json_serializers import json_serializer
from logarchive import __version__
from logarchive.pipeline import ArchivePipeline

# __main__.py is at src/logarchive/__main__.py, so root is 3 levels up
PROJECT_ROOT = Path(__file__).parent.parent.parent

EXIT_OK = 0
EXIT_PARTIAL_FAILURE = 1
EXIT_HALTED = 2

# Placeholder logger until setup_logging() is called in main()
logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Archive resolved CDN access logs, one daily partition at a time",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Process every enabled group
    python -m logarchive

    # Process one group with an explicit config file
    python -m logarchive --config /etc/logarchive/config.yaml --group main

    # Show what would be processed
    python -m logarchive --list-pending

    # Force the bounded in-process merge
    python -m logarchive --merge-strategy bounded
        """,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: $ARCHIVER_CONFIG or src/config/config.yaml)",
    )

    parser.add_argument(
        "--group",
        action="append",
        dest="groups",
        default=None,
        help="Only process this group (repeatable; default: all enabled groups)",
    )

    parser.add_argument(
        "--list-pending",
        action="store_true",
        help="Print pending partitions per group as JSON and exit",
    )

    parser.add_argument(
        "--merge-strategy",
        choices=["auto", "external", "bounded"],
        default=None,
        help="Override merge.strategy from the config file",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Console logging level (default: INFO)",
    )

    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Log directory path (default: from LOG_DIR env var or ./logs)",
    )

    parser.add_argument(
        "--log-to-stdout",
        action="store_true",
        help="Send all log output to stdout only, skipping file handlers. "
        "Can also be set via LOG_TO_STDOUT environment variable.",
    )

    return parser.parse_args(argv)


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _setup_logging(args: argparse.Namespace, cycle_id: str) -> None:
    log_dir = Path(args.log_dir or os.getenv("LOG_DIR") or "logs")
    setup_logging(
        name="logarchive",
        stage="run",
        log_dir=log_dir,
        json_format=_env_flag("JSON_LOGS", "true"),
        console_level=getattr(logging, args.log_level),
        cycle_id=cycle_id,
        log_to_stdout=args.log_to_stdout or _env_flag("LOG_TO_STDOUT"),
    )


def _overrides(args: argparse.Namespace) -> dict:
    overrides: dict = {}
    if args.merge_strategy:
        overrides["merge"] = {"strategy": args.merge_strategy}
    return overrides


async def _list_pending(config: ArchiverConfig, groups, cycle_id: str) -> int:
    pipeline = ArchivePipeline(config, cycle_id=cycle_id)
    try:
        pending = await pipeline.list_pending(groups)
    finally:
        pipeline.close()
    print(json.dumps(pending, indent=2))
    return EXIT_OK


async def _run(config: ArchiverConfig, groups, cycle_id: str) -> int:
    pipeline = ArchivePipeline(config, cycle_id=cycle_id)
    try:
        summary = await pipeline.run(groups)
    finally:
        pipeline.close()
    print(json.dumps(summary.to_dict(), indent=2, default=json_serializer))
    return summary.exit_code()


def main(argv=None) -> int:
    global logger

    load_dotenv(PROJECT_ROOT / ".env")
    args = parse_args(argv)
    cycle_id = generate_cycle_id()

    _setup_logging(args, cycle_id)
    logger = logging.getLogger(__name__)

    try:
        config = load_config(args.config, overrides=_overrides(args))
        groups = [g.name for g in config.enabled_groups(args.groups)]
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e, extra={"error_category": e.category.value})
        return EXIT_HALTED

    log_startup_banner(
        logger,
        "CDN Log Archiver",
        version=__version__,
        cycle_id=cycle_id,
        config_path=str(resolve_config_path(args.config)),
        groups=", ".join(groups) or "(none enabled)",
        merge_strategy=config.merge.strategy,
        archive_writer=config.archive.writer,
        log_output_mode=detect_log_output_mode(),
    )

    try:
        if args.list_pending:
            return asyncio.run(_list_pending(config, args.groups, cycle_id))
        return asyncio.run(_run(config, args.groups, cycle_id))
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e, extra={"error_category": e.category.value})
        return EXIT_HALTED
    except KeyboardInterrupt:
        logger.warning("Keyboard interrupt received, run aborted")
        return EXIT_PARTIAL_FAILURE


if __name__ == "__main__":
    sys.exit(main())
