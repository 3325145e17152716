"""
Per-file line classification.

Every line of a staged file is validated, its host aliased, its client id
hashed and the request resolved. Identified requests become ResolvedEntity
lines in the file's scratch output; unidentified ones are collected into
probe batches so the side-channel log learns which of them exist on disk.
"""

import asyncio
import logging
import re
import time
from pathlib import Path
from typing import Dict, List, Optional

from core.errors.exceptions import ParseError
from logarchive.lines import hash_client_id, iter_log_lines
from logarchive.models import (
    FileResult,
    FileStatus,
    Identified,
    Invalid,
    ResolvedEntity,
    UnresolvedCandidate,
)
from logarchive.probe import ExistenceBatcher
from logarchive.resolver import Resolver, normalize_host
from logarchive.schemas import RawLogLine

logger = logging.getLogger(__name__)

_REPEATED_SLASHES = re.compile(r"/+")


def server_path(doc_root: str, path: str) -> str:
    """Filesystem path of a request under the doc root (case preserved)."""
    path = _REPEATED_SLASHES.sub("/", "/" + path.strip().lstrip("/"))
    return f"{doc_root.rstrip('/')}{path}" if doc_root else path


class LineClassifier:
    """
    Classifies one file at a time; safe to run for many files concurrently.

    Example:
        classifier = LineClassifier(resolver, batcher, host_aliases={"example.com": "www.example.com"})
        result = await classifier.classify_file(path, scratch / "a.jsonl", "20240101")
    """

    def __init__(
        self,
        resolver: Resolver,
        batcher: ExistenceBatcher,
        host_aliases: Optional[Dict[str, str]] = None,
        doc_root: str = "",
        probe_batch_size: int = 30,
        yield_every_lines: int = 1000,
    ):
        self.resolver = resolver
        self.batcher = batcher
        self.host_aliases = host_aliases or {}
        self.doc_root = doc_root
        self.probe_batch_size = probe_batch_size
        self.yield_every_lines = yield_every_lines

    async def classify_file(self, path: Path, output_path: Path, date_key: str) -> FileResult:
        start = time.perf_counter()
        result = FileResult(path=path, status=FileStatus.SUCCEEDED, output_path=output_path)
        candidates: List[UnresolvedCandidate] = []

        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as out:
            for line in iter_log_lines(path):
                result.lines_read += 1
                if result.lines_read % self.yield_every_lines == 0:
                    await asyncio.sleep(0)

                try:
                    raw = RawLogLine.parse_line(line)
                except ParseError:
                    result.lines_malformed += 1
                    continue

                host = normalize_host(raw.host)
                host = self.host_aliases.get(host, host)
                resolution = await self.resolver.resolve(host, raw.path)

                if isinstance(resolution, Identified):
                    entity = ResolvedEntity(
                        entity=resolution.entity,
                        client_hash=hash_client_id(raw.client_ip),
                        date_key=date_key,
                    )
                    out.write(entity.to_line() + "\n")
                    result.records += 1
                elif isinstance(resolution, Invalid):
                    result.lines_invalid += 1
                else:
                    result.lines_unidentified += 1
                    candidates.append(
                        UnresolvedCandidate(
                            host=host,
                            path=raw.path,
                            server_path=server_path(self.doc_root, raw.path),
                        )
                    )
                    if len(candidates) >= self.probe_batch_size:
                        await self.batcher.check(candidates)
                        candidates = []

        if candidates:
            await self.batcher.check(candidates)

        if result.lines_read == result.lines_malformed:
            result.status = FileStatus.SUCCEEDED_EMPTY
        result.duration_ms = round((time.perf_counter() - start) * 1000, 2)

        logger.debug(
            "Classified %s",
            path.name,
            extra={
                "file": path.name,
                "lines_read": result.lines_read,
                "lines_malformed": result.lines_malformed,
                "lines_invalid": result.lines_invalid,
                "lines_unidentified": result.lines_unidentified,
                "records_written": result.records,
                "duration_ms": result.duration_ms,
            },
        )
        return result
