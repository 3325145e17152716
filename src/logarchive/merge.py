"""
Merge and dedupe a partition's per-file outputs into one sorted artifact.

Strategies:
    external - `sort -u` under LC_ALL=C; disk-backed, handles any size
    bounded  - streaming dedupe with a capped in-memory set, then a plain
               `sort` for ordering
    auto     - external when the sort utility exists, bounded when it does
               not or when the external run fails

Both strategies order lines by byte value, so on inputs that fit the
bounded cap they produce identical artifacts.
"""

import asyncio
import logging
import os
import shutil
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from config.config import MergeSettings
from core.errors.exceptions import MergeError
from core.logging.utilities import log_exception
from logarchive.models import FileResult, Partition

logger = logging.getLogger(__name__)


class MergeStrategy(str, Enum):
    AUTO = "auto"
    EXTERNAL = "external"
    BOUNDED = "bounded"


@dataclass
class MergeArtifact:
    path: Path
    strategy: MergeStrategy
    lines_in: int
    lines_out: int


def count_lines(path: Path) -> int:
    with open(path, "rb") as f:
        return sum(1 for _ in f)


def concat_outputs(paths: Iterable[Path], dest: Path) -> int:
    """Stream every line of paths into dest. Returns the line count."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    lines = 0
    with open(dest, "w", encoding="utf-8") as out:
        for path in paths:
            with open(path, "r", encoding="utf-8") as src:
                for line in src:
                    if not line.strip():
                        continue
                    out.write(line if line.endswith("\n") else line + "\n")
                    lines += 1
    return lines


def _sort_env() -> dict:
    env = dict(os.environ)
    env["LC_ALL"] = "C"
    return env


def build_sort_command(
    settings: MergeSettings, src: Path, dest: Path, unique: bool, temp_dir: Path
) -> List[str]:
    sort_path = shutil.which(settings.sort_command)
    if not sort_path:
        raise MergeError(f"Sort utility not found: {settings.sort_command}")

    cmd = [sort_path]
    if unique:
        cmd.append("-u")
    cmd.extend(["-T", str(temp_dir)])
    if settings.sort_buffer_size:
        cmd.extend(["-S", settings.sort_buffer_size])
    cmd.extend(["-o", str(dest), str(src)])
    return cmd


def run_sort(settings: MergeSettings, src: Path, dest: Path, unique: bool) -> None:
    temp_dir = Path(settings.temp_dir) if settings.temp_dir else dest.parent
    temp_dir.mkdir(parents=True, exist_ok=True)
    cmd = build_sort_command(settings, src, dest, unique, temp_dir)

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=settings.sort_timeout_seconds,
            check=False,
            env=_sort_env(),
        )
    except subprocess.TimeoutExpired as e:
        raise MergeError(
            f"sort timed out after {settings.sort_timeout_seconds:.0f}s",
            cause=e,
            context={"timeout_seconds": settings.sort_timeout_seconds},
        ) from e
    except OSError as e:
        raise MergeError(f"sort could not start: {e}", cause=e) from e

    if result.returncode != 0:
        raise MergeError(
            f"sort failed (returncode={result.returncode}): {(result.stderr or '').strip()[:200]}",
            context={"returncode": result.returncode},
        )


def external_sort_unique(src: Path, dest: Path, settings: MergeSettings) -> int:
    run_sort(settings, src, dest, unique=True)
    return count_lines(dest)


def bounded_dedupe(src: Path, dest: Path, max_entries: int) -> Tuple[int, int]:
    """
    Streaming dedupe with a capped seen-set.

    When the set reaches max_entries it is cleared, so duplicates spanning a
    reset survive; memory stays bounded regardless of input size.

    Returns:
        (lines_in, lines_out)
    """
    seen = set()
    lines_in = lines_out = 0
    with open(src, "r", encoding="utf-8") as f, open(dest, "w", encoding="utf-8") as out:
        for line in f:
            lines_in += 1
            if line in seen:
                continue
            if len(seen) >= max_entries:
                logger.warning(
                    "Bounded dedupe cap reached; clearing seen set",
                    extra={"cache_size": len(seen), "lines_in": lines_in},
                )
                seen.clear()
            seen.add(line)
            out.write(line)
            lines_out += 1
    return lines_in, lines_out


def bounded_merge(src: Path, dest: Path, settings: MergeSettings) -> int:
    deduped = dest.with_name(dest.name + ".dedupe")
    _, lines_out = bounded_dedupe(src, deduped, settings.max_unique_lines)

    if shutil.which(settings.sort_command):
        run_sort(settings, deduped, dest, unique=False)
    elif lines_out <= settings.max_unique_lines:
        with open(deduped, "r", encoding="utf-8") as f:
            lines = sorted(f, key=lambda s: s.encode("utf-8"))
        with open(dest, "w", encoding="utf-8") as out:
            out.writelines(lines)
    else:
        logger.warning(
            "No sort utility and too many lines to sort in memory; artifact left in arrival order",
            extra={"lines_out": lines_out},
        )
        os.replace(deduped, dest)

    deduped.unlink(missing_ok=True)
    return lines_out


class MergeStage:
    """
    Produces the partition artifact from successful per-file outputs.

    Example:
        stage = MergeStage(config.merge)
        artifact = await stage.merge(partition, file_results)
    """

    def __init__(self, settings: MergeSettings):
        self.settings = settings

    def strategies(self) -> List[MergeStrategy]:
        """Strategies to attempt, in order."""
        strategy = MergeStrategy(self.settings.strategy)
        if strategy == MergeStrategy.EXTERNAL:
            return [MergeStrategy.EXTERNAL]
        if strategy == MergeStrategy.BOUNDED:
            return [MergeStrategy.BOUNDED]
        if shutil.which(self.settings.sort_command):
            return [MergeStrategy.EXTERNAL, MergeStrategy.BOUNDED]
        return [MergeStrategy.BOUNDED]

    def _run(self, strategy: MergeStrategy, src: Path, dest: Path) -> int:
        if strategy == MergeStrategy.EXTERNAL:
            return external_sort_unique(src, dest, self.settings)
        return bounded_merge(src, dest, self.settings)

    async def merge(self, partition: Partition, results: Iterable[FileResult]) -> MergeArtifact:
        """
        Raises:
            MergeError: no strategy produced the artifact
        """
        outputs = [
            r.output_path
            for r in results
            if r.succeeded and r.records and r.output_path is not None and r.output_path.exists()
        ]
        combined = partition.scratch_dir / "combined.jsonl"
        dest = partition.scratch_dir / f"{partition.date_key}.txt"

        try:
            lines_in = await asyncio.to_thread(concat_outputs, outputs, combined)
        except OSError as e:
            raise MergeError(f"Failed to concatenate outputs: {e}", cause=e) from e

        last_error: Optional[MergeError] = None
        for strategy in self.strategies():
            start = time.perf_counter()
            try:
                lines_out = await asyncio.to_thread(self._run, strategy, combined, dest)
            except (MergeError, OSError) as e:
                last_error = e if isinstance(e, MergeError) else MergeError(str(e), cause=e)
                log_exception(
                    logger,
                    last_error,
                    f"Merge strategy {strategy.value} failed",
                    level=logging.WARNING,
                    include_traceback=False,
                    strategy=strategy.value,
                )
                continue

            combined.unlink(missing_ok=True)
            logger.info(
                "Merged %d lines into %d unique for %s",
                lines_in,
                lines_out,
                partition.date_key,
                extra={
                    "strategy": strategy.value,
                    "lines_in": lines_in,
                    "lines_out": lines_out,
                    "files_total": len(outputs),
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                },
            )
            return MergeArtifact(path=dest, strategy=strategy, lines_in=lines_in, lines_out=lines_out)

        raise MergeError(
            f"No merge strategy produced an artifact for {partition.date_key}",
            cause=last_error,
        )
