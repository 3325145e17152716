"""
Batch runner: classify a partition's staged files in bounded batches.

Files of one batch run concurrently. Each file has its own deadline and the
batch as a whole has another; when the batch deadline expires, finished
files keep their results and the rest are marked FAILED_INCOMPLETE.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Iterable, List, Sequence, Tuple

from config.config import RunnerSettings
from core.logging.utilities import format_batch_output, log_exception
from core.resilience.deadline import wait_with_deadline
from logarchive.classifier import LineClassifier
from logarchive.models import BatchSummary, FileResult, FileStatus, Partition

logger = logging.getLogger(__name__)


def select_log_files(paths: Iterable[Path], suffixes: Sequence[str]) -> List[Path]:
    """Staged files whose name ends in one of suffixes, sorted."""
    suffixes = tuple(suffixes)
    return sorted(Path(p) for p in paths if Path(p).name.endswith(suffixes))


def dedupe_lines_in_place(path: Path) -> Tuple[int, int]:
    """
    Drop exact duplicate lines, keeping first occurrences in order.

    Returns:
        (lines_in, lines_out)
    """
    seen = set()
    lines_in = 0
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(path, "r", encoding="utf-8") as src, open(tmp_path, "w", encoding="utf-8") as dst:
        for line in src:
            lines_in += 1
            if line in seen:
                continue
            seen.add(line)
            dst.write(line)
    os.replace(tmp_path, path)
    return lines_in, len(seen)


class BatchRunner:
    """
    Runs the line classifier over every file of a partition.

    Example:
        runner = BatchRunner(classifier, config.runner)
        summaries = await runner.run(partition, staged_paths)
    """

    def __init__(self, classifier: LineClassifier, settings: RunnerSettings):
        self.classifier = classifier
        self.settings = settings

    def output_path(self, partition: Partition, index: int, path: Path) -> Path:
        return partition.scratch_dir / "files" / f"{index:05d}_{path.name}.jsonl"

    async def _run_file(self, partition: Partition, path: Path, output: Path) -> FileResult:
        result = await asyncio.wait_for(
            self.classifier.classify_file(path, output, partition.date_key),
            timeout=self.settings.file_timeout_seconds,
        )
        if result.records:
            lines_in, lines_out = await asyncio.to_thread(dedupe_lines_in_place, output)
            result.records = lines_out
            if lines_in != lines_out:
                logger.debug(
                    "De-duplicated %s",
                    output.name,
                    extra={"file": path.name, "lines_in": lines_in, "lines_out": lines_out},
                )
        return result

    def _failed(self, path: Path, output: Path, exc: BaseException) -> FileResult:
        if isinstance(exc, asyncio.TimeoutError):
            error = f"file deadline of {self.settings.file_timeout_seconds:.0f}s exceeded"
        else:
            error = f"{type(exc).__name__}: {exc}"
        log_exception(
            logger,
            exc,
            f"File failed: {path.name}",
            level=logging.WARNING,
            include_traceback=not isinstance(exc, asyncio.TimeoutError),
            file=path.name,
        )
        return FileResult(path=path, status=FileStatus.FAILED, output_path=output, error=error)

    async def run_batch(self, partition: Partition, index: int, batch: List[Tuple[int, Path]]) -> BatchSummary:
        outputs = {path: self.output_path(partition, i, path) for i, path in batch}
        outcome = await wait_with_deadline(
            {path: self._run_file(partition, path, outputs[path]) for _, path in batch},
            timeout=self.settings.batch_timeout_seconds,
        )

        summary = BatchSummary(index=index)
        for _, path in batch:
            if path in outcome.done:
                summary.results.append(outcome.done[path])
            elif path in outcome.errors:
                summary.results.append(self._failed(path, outputs[path], outcome.errors[path]))
            else:
                summary.results.append(
                    FileResult(
                        path=path,
                        status=FileStatus.FAILED_INCOMPLETE,
                        output_path=outputs[path],
                        error=f"batch deadline of {self.settings.batch_timeout_seconds:.0f}s exceeded",
                    )
                )

        if outcome.timed_out:
            logger.warning(
                "Batch %d hit its deadline with %d files unfinished",
                index + 1,
                len(outcome.pending),
                extra={"batch_index": index, "pending_tasks": len(outcome.pending)},
            )
        return summary

    async def run(self, partition: Partition, staged: Iterable[Path]) -> List[BatchSummary]:
        files = select_log_files(staged, self.settings.file_suffixes)
        indexed = list(enumerate(files))
        batches = [
            indexed[i:i + self.settings.batch_size]
            for i in range(0, len(indexed), self.settings.batch_size)
        ]

        summaries: List[BatchSummary] = []
        for index, batch in enumerate(batches):
            summary = await self.run_batch(partition, index, batch)
            summaries.append(summary)
            logger.info(
                format_batch_output(
                    index,
                    summary.succeeded,
                    summary.failed,
                    summary.records,
                    incomplete=summary.incomplete,
                    total_batches=len(batches),
                ),
                extra={
                    "date_key": partition.date_key,
                    "batch_index": index,
                    "batch_size": len(batch),
                    "files_succeeded": summary.succeeded,
                    "files_failed": summary.failed,
                    "files_incomplete": summary.incomplete,
                    "records_written": summary.records,
                },
            )
        return summaries
