"""
Upload, verify, commit.

The merged artifact is uploaded with the configured writer, then checked
with an independent reader. Only a verified object gets a processing-state
row, and only after that row exists is local staging removed. A failed
verification halts the whole run: it means uploads are landing somewhere
the reader cannot see.
"""

import asyncio
import logging
import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol

from config.config import ArchiveSettings
from core.errors.exceptions import (
    ArchiveUploadError,
    ArchiveVerificationError,
    PipelineError,
)
from logarchive.models import Partition
from logarchive.state import StateStore
from logarchive.storage import ObjectStore

logger = logging.getLogger(__name__)


def archive_key(settings: ArchiveSettings, partition: Partition) -> str:
    return settings.key_template.format(date_key=partition.date_key, group=partition.group)


def archive_path(bucket: str, key: str) -> str:
    return f"s3://{bucket}/{key}"


class ArchiveWriter(Protocol):
    async def upload(self, path: Path, bucket: str, key: str) -> None:
        ...


class S3ArchiveWriter:
    def __init__(self, store: ObjectStore):
        self.store = store

    async def upload(self, path: Path, bucket: str, key: str) -> None:
        try:
            await self.store.async_upload_file(path, bucket, key)
        except PipelineError as e:
            raise ArchiveUploadError(
                f"Upload to {archive_path(bucket, key)} failed",
                cause=e,
                context={"bucket": bucket, "object_key": key},
            ) from e


class RcloneArchiveWriter:
    """Uploads with `rclone copyto <file> <remote><bucket>/<key>`."""

    def __init__(self, settings: ArchiveSettings):
        self.settings = settings

    def build_command(self, path: Path, bucket: str, key: str) -> List[str]:
        argv = shlex.split(self.settings.rclone_command)
        executable = shutil.which(argv[0]) if argv else None
        if not executable:
            raise ArchiveUploadError(
                f"rclone not found: {self.settings.rclone_command!r}. Ensure it is installed and in PATH."
            )
        return [executable, *argv[1:], "copyto", str(path), f"{self.settings.rclone_remote}{bucket}/{key}"]

    def _upload(self, path: Path, bucket: str, key: str) -> None:
        cmd = self.build_command(path, bucket, key)
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.settings.upload_timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ArchiveUploadError(
                f"rclone upload timed out after {self.settings.upload_timeout_seconds:.0f}s",
                cause=e,
                context={"timeout_seconds": self.settings.upload_timeout_seconds},
            ) from e
        except OSError as e:
            raise ArchiveUploadError(f"rclone could not start: {e}", cause=e) from e

        if result.returncode != 0:
            raise ArchiveUploadError(
                f"rclone copyto failed (returncode={result.returncode}): "
                f"{(result.stderr or '').strip()[:200]}",
                context={"returncode": result.returncode, "bucket": bucket, "object_key": key},
            )

    async def upload(self, path: Path, bucket: str, key: str) -> None:
        await asyncio.to_thread(self._upload, path, bucket, key)


class ArchiveVerifier:
    """Confirms an uploaded object through a separately configured reader."""

    def __init__(self, reader: ObjectStore, diagnostics_list_limit: int = 20):
        self.reader = reader
        self.diagnostics_list_limit = diagnostics_list_limit

    async def verify(self, bucket: str, key: str) -> dict:
        """
        Returns:
            head_object metadata

        Raises:
            ArchiveVerificationError: object not visible to the reader
        """
        try:
            head = await self.reader.async_head(bucket, key)
        except PipelineError as e:
            raise ArchiveVerificationError(
                f"Archive verification of {archive_path(bucket, key)} failed",
                cause=e,
                context={"bucket": bucket, "object_key": key},
            ) from e
        if head is not None:
            return head

        visible = await self._list_for_diagnostics(bucket)
        logger.error(
            "Archive object missing after upload; reader sees %d keys: %s",
            len(visible),
            visible,
            extra={"bucket": bucket, "object_key": key, "keys_listed": len(visible)},
        )
        raise ArchiveVerificationError(
            f"Archive object {archive_path(bucket, key)} not found after upload",
            context={"bucket": bucket, "object_key": key, "keys_listed": visible},
        )

    async def _list_for_diagnostics(self, bucket: str) -> List[str]:
        try:
            return await self.reader.async_list_keys(bucket, "", self.diagnostics_list_limit)
        except PipelineError as e:
            logger.warning(
                "Diagnostics listing failed: %s",
                e,
                extra={"bucket": bucket, "error_category": e.category.value},
            )
            return []


@dataclass
class CommitResult:
    archive_path: str
    recorded: bool
    size_bytes: Optional[int] = None


class UploadVerifyCommit:
    """
    Example:
        uvc = UploadVerifyCommit(writer, verifier, state, config.archive)
        result = await uvc.run(partition, artifact.path, bucket="archive-main")
    """

    def __init__(
        self,
        writer: ArchiveWriter,
        verifier: ArchiveVerifier,
        state: StateStore,
        settings: ArchiveSettings,
    ):
        self.writer = writer
        self.verifier = verifier
        self.state = state
        self.settings = settings

    async def run(self, partition: Partition, artifact: Path, bucket: str) -> CommitResult:
        key = archive_key(self.settings, partition)
        path = archive_path(bucket, key)
        start = time.perf_counter()

        await self.writer.upload(artifact, bucket, key)
        logger.info(
            "Uploaded %s",
            path,
            extra={"archive_path": path, "local_path": str(artifact)},
        )

        head = await self.verifier.verify(bucket, key)

        recorded = await self.state.async_record_processed(partition.group, partition.date_key, path)

        await asyncio.to_thread(self.cleanup, partition)

        logger.info(
            "Committed %s",
            partition.date_key,
            extra={
                "date_key": partition.date_key,
                "archive_path": path,
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            },
        )
        return CommitResult(
            archive_path=path,
            recorded=recorded,
            size_bytes=head.get("ContentLength"),
        )

    @staticmethod
    def cleanup(partition: Partition) -> None:
        for directory in (partition.staging_dir, partition.scratch_dir):
            shutil.rmtree(directory, ignore_errors=True)
