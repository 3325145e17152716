"""Tests for the batch runner."""

import asyncio
from pathlib import Path

import pytest

from config.config import RunnerSettings
from logarchive.models import FileResult, FileStatus
from logarchive.runner import BatchRunner, dedupe_lines_in_place, select_log_files


class StubClassifier:
    """Writes canned lines per file name; "boom" raises and "slow" sleeps."""

    def __init__(self, lines=None, slow_seconds=60.0):
        self.lines = lines or {}
        self.slow_seconds = slow_seconds

    async def classify_file(self, path: Path, output_path: Path, date_key: str) -> FileResult:
        if "boom" in path.name:
            raise RuntimeError("corrupt gzip stream")
        if "slow" in path.name:
            await asyncio.sleep(self.slow_seconds)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        lines = self.lines.get(path.name, ['{"id":"1"}'])
        output_path.write_text("".join(line + "\n" for line in lines))
        return FileResult(path=path, status=FileStatus.SUCCEEDED, records=len(lines), output_path=output_path)


def _files(tmp_path, *names):
    paths = []
    for name in names:
        path = tmp_path / name
        path.write_text("")
        paths.append(path)
    return paths


class TestSelectLogFiles:
    def test_filters_by_suffix_and_sorts(self):
        paths = [Path("b.log.gz"), Path("a.log"), Path("manifest.json"), Path("c.log.gz.tmp")]
        assert select_log_files(paths, [".log.gz", ".log"]) == [Path("a.log"), Path("b.log.gz")]


class TestDedupeLinesInPlace:
    def test_keeps_first_occurrences(self, tmp_path):
        path = tmp_path / "out.jsonl"
        path.write_text("b\na\nb\nc\na\n")

        assert dedupe_lines_in_place(path) == (5, 3)
        assert path.read_text() == "b\na\nc\n"


class TestBatchRunner:
    @pytest.mark.asyncio
    async def test_runs_all_files_in_batches(self, tmp_path, partition):
        staged = _files(tmp_path, "a.log", "b.log", "c.log", "ignored.txt")
        runner = BatchRunner(StubClassifier(), RunnerSettings(batch_size=2))

        summaries = await runner.run(partition, staged)

        assert [len(s.results) for s in summaries] == [2, 1]
        assert all(r.status == FileStatus.SUCCEEDED for s in summaries for r in s.results)
        assert summaries[0].results[0].output_path == partition.scratch_dir / "files" / "00000_a.log.jsonl"

    @pytest.mark.asyncio
    async def test_output_deduped_per_file(self, tmp_path, partition):
        staged = _files(tmp_path, "a.log")
        classifier = StubClassifier(lines={"a.log": ['{"id":"1"}', '{"id":"2"}', '{"id":"1"}']})

        summaries = await BatchRunner(classifier, RunnerSettings()).run(partition, staged)

        result = summaries[0].results[0]
        assert result.records == 2
        assert result.output_path.read_text() == '{"id":"1"}\n{"id":"2"}\n'

    @pytest.mark.asyncio
    async def test_failing_file_does_not_affect_others(self, tmp_path, partition, caplog):
        staged = _files(tmp_path, "a.log", "boom.log")

        summaries = await BatchRunner(StubClassifier(), RunnerSettings()).run(partition, staged)

        by_name = {r.path.name: r for r in summaries[0].results}
        assert by_name["a.log"].status == FileStatus.SUCCEEDED
        assert by_name["boom.log"].status == FileStatus.FAILED
        assert "corrupt gzip stream" in by_name["boom.log"].error
        assert any("File failed: boom.log" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_file_deadline(self, tmp_path, partition):
        staged = _files(tmp_path, "a.log", "slow.log")
        settings = RunnerSettings(file_timeout_seconds=0.05, batch_timeout_seconds=10)

        summaries = await BatchRunner(StubClassifier(), settings).run(partition, staged)

        by_name = {r.path.name: r for r in summaries[0].results}
        assert by_name["slow.log"].status == FileStatus.FAILED
        assert "file deadline" in by_name["slow.log"].error
        assert by_name["a.log"].succeeded

    @pytest.mark.asyncio
    async def test_batch_deadline_marks_unfinished_incomplete(self, tmp_path, partition, caplog):
        staged = _files(tmp_path, "a.log", "slow.log")
        settings = RunnerSettings(file_timeout_seconds=60, batch_timeout_seconds=0.05)

        summaries = await BatchRunner(StubClassifier(), settings).run(partition, staged)

        by_name = {r.path.name: r for r in summaries[0].results}
        assert by_name["a.log"].status == FileStatus.SUCCEEDED
        assert by_name["slow.log"].status == FileStatus.FAILED_INCOMPLETE
        assert summaries[0].incomplete == 1
        assert any("hit its deadline" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_no_files(self, partition):
        assert await BatchRunner(StubClassifier(), RunnerSettings()).run(partition, []) == []
