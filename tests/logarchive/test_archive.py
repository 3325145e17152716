"""Tests for upload, verification and the commit barrier."""

import subprocess
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from config.config import ArchiveSettings
from core.errors.exceptions import (
    ArchiveUploadError,
    ArchiveVerificationError,
    PermanentError,
    StateStoreError,
)
from logarchive.archive import (
    ArchiveVerifier,
    RcloneArchiveWriter,
    S3ArchiveWriter,
    UploadVerifyCommit,
    archive_key,
    archive_path,
)


@pytest.fixture
def artifact(partition) -> Path:
    partition.staging_dir.mkdir(parents=True)
    (partition.staging_dir / "a.log").write_text("raw")
    partition.scratch_dir.mkdir(parents=True)
    path = partition.scratch_dir / "20240101.txt"
    path.write_text('{"db":"content.articles","id":"7","ip":"x","date":"20240101"}\n')
    return path


class TestKeys:
    def test_default_key(self, partition):
        assert archive_key(ArchiveSettings(), partition) == "20240101.txt"

    def test_template_with_group(self, partition):
        settings = ArchiveSettings(key_template="{group}/{date_key}.jsonl")
        assert archive_key(settings, partition) == "main/20240101.jsonl"

    def test_archive_path(self):
        assert archive_path("archive-main", "20240101.txt") == "s3://archive-main/20240101.txt"


class TestS3ArchiveWriter:
    @pytest.mark.asyncio
    async def test_upload(self, fake_store, artifact):
        await S3ArchiveWriter(fake_store).upload(artifact, "archive-main", "20240101.txt")
        assert fake_store.buckets["archive-main"]["20240101.txt"] == artifact.read_bytes()

    @pytest.mark.asyncio
    async def test_failure_wrapped(self, fake_store, artifact):
        fake_store.fail_uploads = True
        with pytest.raises(ArchiveUploadError, match="Upload to s3://archive-main/20240101.txt failed"):
            await S3ArchiveWriter(fake_store).upload(artifact, "archive-main", "20240101.txt")


class TestRcloneArchiveWriter:
    def test_build_command(self):
        writer = RcloneArchiveWriter(ArchiveSettings(rclone_command="rclone --config /etc/rclone.conf"))
        with patch("logarchive.archive.shutil.which", return_value="/usr/bin/rclone"):
            cmd = writer.build_command(Path("/tmp/20240101.txt"), "archive-main", "20240101.txt")

        assert cmd == [
            "/usr/bin/rclone",
            "--config",
            "/etc/rclone.conf",
            "copyto",
            "/tmp/20240101.txt",
            "r2:archive-main/20240101.txt",
        ]

    def test_missing_binary(self):
        writer = RcloneArchiveWriter(ArchiveSettings())
        with patch("logarchive.archive.shutil.which", return_value=None):
            with pytest.raises(ArchiveUploadError, match="rclone not found"):
                writer.build_command(Path("a"), "b", "c")

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, artifact):
        writer = RcloneArchiveWriter(ArchiveSettings())
        failed = subprocess.CompletedProcess(args=[], returncode=3, stdout="", stderr="directory not found")

        with patch("logarchive.archive.shutil.which", return_value="/usr/bin/rclone"), patch(
            "logarchive.archive.subprocess.run", return_value=failed
        ):
            with pytest.raises(ArchiveUploadError, match="returncode=3"):
                await writer.upload(artifact, "archive-main", "20240101.txt")

    @pytest.mark.asyncio
    async def test_timeout(self, artifact):
        writer = RcloneArchiveWriter(ArchiveSettings(upload_timeout_seconds=5))

        with patch("logarchive.archive.shutil.which", return_value="/usr/bin/rclone"), patch(
            "logarchive.archive.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="rclone", timeout=5),
        ):
            with pytest.raises(ArchiveUploadError, match="timed out"):
                await writer.upload(artifact, "archive-main", "20240101.txt")


class TestArchiveVerifier:
    @pytest.mark.asyncio
    async def test_visible_object(self, fake_store):
        fake_store.put("archive-main", "20240101.txt", b"abc")
        head = await ArchiveVerifier(fake_store).verify("archive-main", "20240101.txt")
        assert head["ContentLength"] == 3

    @pytest.mark.asyncio
    async def test_missing_object_lists_for_diagnostics(self, fake_store, caplog):
        fake_store.put("archive-main", "20231231.txt", b"x")

        with pytest.raises(ArchiveVerificationError) as exc_info:
            await ArchiveVerifier(fake_store, diagnostics_list_limit=5).verify("archive-main", "20240101.txt")

        assert exc_info.value.halts_run
        assert exc_info.value.context["keys_listed"] == ["20231231.txt"]
        assert any("missing after upload" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_reader_error_is_verification_failure(self):
        reader = MagicMock()
        reader.async_head = AsyncMock(side_effect=PermanentError("403 Forbidden"))

        with pytest.raises(ArchiveVerificationError):
            await ArchiveVerifier(reader).verify("archive-main", "20240101.txt")


class TestUploadVerifyCommit:
    @pytest.mark.asyncio
    async def test_commit_after_verification_then_cleanup(self, fake_store, state_store, partition, artifact):
        uvc = UploadVerifyCommit(
            S3ArchiveWriter(fake_store), ArchiveVerifier(fake_store), state_store, ArchiveSettings()
        )

        result = await uvc.run(partition, artifact, "archive-main")

        assert result.archive_path == "s3://archive-main/20240101.txt"
        assert result.recorded
        assert result.size_bytes == len(fake_store.buckets["archive-main"]["20240101.txt"])
        assert state_store.processed_date_keys("main") == {"20240101"}
        assert not partition.staging_dir.exists()
        assert not partition.scratch_dir.exists()

    @pytest.mark.asyncio
    async def test_failed_verification_records_nothing_and_keeps_files(
        self, fake_store, state_store, partition, artifact
    ):
        fake_store.hidden.add("20240101.txt")
        uvc = UploadVerifyCommit(
            S3ArchiveWriter(fake_store), ArchiveVerifier(fake_store), state_store, ArchiveSettings()
        )

        with pytest.raises(ArchiveVerificationError):
            await uvc.run(partition, artifact, "archive-main")

        assert state_store.processed_date_keys("main") == set()
        assert partition.staging_dir.exists()
        assert artifact.exists()

    @pytest.mark.asyncio
    async def test_failed_upload_skips_verification(self, fake_store, partition, artifact):
        fake_store.fail_uploads = True
        verifier = MagicMock()
        verifier.verify = AsyncMock()
        state = MagicMock()
        state.async_record_processed = AsyncMock()

        uvc = UploadVerifyCommit(S3ArchiveWriter(fake_store), verifier, state, ArchiveSettings())
        with pytest.raises(ArchiveUploadError):
            await uvc.run(partition, artifact, "archive-main")

        verifier.verify.assert_not_called()
        state.async_record_processed.assert_not_called()

    @pytest.mark.asyncio
    async def test_state_failure_keeps_staging(self, fake_store, partition, artifact):
        state = MagicMock()
        state.async_record_processed = AsyncMock(side_effect=StateStoreError("db down"))
        uvc = UploadVerifyCommit(
            S3ArchiveWriter(fake_store), ArchiveVerifier(fake_store), state, ArchiveSettings()
        )

        with pytest.raises(StateStoreError):
            await uvc.run(partition, artifact, "archive-main")

        assert partition.staging_dir.exists()
