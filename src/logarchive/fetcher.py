"""
Partition fetcher: bounded-concurrency download into the staging directory.

Object keys keep their sub-path relative to the partition prefix. A single
failed download cancels the rest and fails the partition; re-running a fetch
overwrites whatever was staged before.
"""

import asyncio
import logging
import time
from pathlib import Path, PurePosixPath
from typing import List

from config.config import FetchSettings
from core.errors.exceptions import FetchError, PipelineError
from core.logging.periodic_logger import ProgressLogger
from logarchive.models import Partition
from logarchive.storage import ObjectStore

logger = logging.getLogger(__name__)


def staged_path(staging_dir: Path, prefix: str, key: str) -> Path:
    """Local path for key, relative to the partition prefix."""
    relative = key[len(prefix):] if key.startswith(prefix) else key
    parts = PurePosixPath(relative.lstrip("/")).parts
    if not parts or any(p in ("..", ".") for p in parts):
        raise FetchError(f"Refusing to stage object with unsafe key: {key}", context={"object_key": key})
    return staging_dir.joinpath(*parts)


class Fetcher:
    """
    Downloads every object of a partition.

    Example:
        fetcher = Fetcher(source_store, config.fetch)
        paths = await fetcher.fetch(partition, bucket="cdn-logs-main")
    """

    def __init__(self, source: ObjectStore, settings: FetchSettings):
        self.source = source
        self.settings = settings

    async def fetch(self, partition: Partition, bucket: str) -> List[Path]:
        """
        Download the partition's objects.

        Returns:
            Staged file paths, in listing order

        Raises:
            FetchError: listing or any download failed
        """
        try:
            keys = await self.source.async_list_keys(bucket, partition.prefix)
        except PipelineError as e:
            raise FetchError(
                f"Failed to list partition {partition.date_key}",
                cause=e,
                context={"bucket": bucket, "date_key": partition.date_key},
            ) from e

        keys = [k for k in keys if not k.endswith("/")]
        try:
            partition.staging_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FetchError(
                f"Cannot create staging directory for {partition.date_key}",
                cause=e,
                context={"date_key": partition.date_key, "local_path": str(partition.staging_dir)},
            ) from e
        if not keys:
            logger.warning(
                "Partition %s has no objects",
                partition.date_key,
                extra={"date_key": partition.date_key, "bucket": bucket},
            )
            return []

        destinations = [staged_path(partition.staging_dir, partition.prefix, k) for k in keys]
        semaphore = asyncio.Semaphore(self.settings.concurrency)
        completed = 0

        async def _download(key: str, dest: Path) -> Path:
            nonlocal completed
            async with semaphore:
                await self.source.async_download_file(bucket, key, dest)
            completed += 1
            return dest

        start = time.perf_counter()
        tasks = [
            asyncio.create_task(_download(key, dest), name=f"fetch:{key}")
            for key, dest in zip(keys, destinations)
        ]
        progress = ProgressLogger(
            self.settings.progress_interval_seconds,
            lambda: (completed, len(keys)),
            stage="fetch",
            label=f"Fetch {partition.date_key}",
        )
        progress.start()

        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            failures = [t for t in done if not t.cancelled() and t.exception() is not None]
            if failures:
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                first = failures[0].exception()
                raise FetchError(
                    f"Download failed for partition {partition.date_key}: {first}",
                    cause=first,
                    context={
                        "date_key": partition.date_key,
                        "objects_completed": completed,
                        "objects_total": len(keys),
                    },
                ) from first
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await progress.stop(log_final=False)

        logger.info(
            "Fetched %d objects for %s",
            len(keys),
            partition.date_key,
            extra={
                "date_key": partition.date_key,
                "objects_total": len(keys),
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            },
        )
        return destinations
