"""
Domain models for the archive pipeline.

Plain dataclasses passed between stages. Raw log lines are validated with
pydantic (see logarchive.schemas); everything here is produced by the
pipeline itself.
"""

import json
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Union


@dataclass(frozen=True)
class Partition:
    """All log objects of one group for one calendar date.

    Attributes:
        date_key: YYYYMMDD date the partition covers
        group: Owning group name
        prefix: Object key prefix of the partition in the source bucket
        staging_dir: Local directory downloads land in
        scratch_dir: Local directory for per-file and merged outputs
    """

    date_key: str
    group: str
    prefix: str
    staging_dir: Path
    scratch_dir: Path


@dataclass(frozen=True)
class EntityRef:
    """Reference to an entity row; table is "database.table"."""

    table: str
    entity_id: str


@dataclass(frozen=True)
class ResolvedEntity:
    entity: EntityRef
    client_hash: str
    date_key: str

    def to_line(self) -> str:
        """One compact JSON line; key order is fixed so duplicates compare equal."""
        return json.dumps(
            {
                "db": self.entity.table,
                "id": self.entity.entity_id,
                "ip": self.client_hash,
                "date": self.date_key,
            },
            separators=(",", ":"),
            ensure_ascii=False,
        )


@dataclass(frozen=True)
class UnresolvedCandidate:
    """A request the resolver could not classify, queued for an existence probe."""

    host: str
    path: str
    server_path: str

    @property
    def url(self) -> str:
        return f"{self.host}{self.path}"


# Resolution variants


@dataclass(frozen=True)
class Identified:
    entity: EntityRef


@dataclass(frozen=True)
class Invalid:
    reason: str = ""


@dataclass(frozen=True)
class Unidentified:
    pass


Resolution = Union[Identified, Invalid, Unidentified]


@dataclass
class IdentifierCacheEntry:
    """Row of the identifier map, keyed by md5(host + path)."""

    content_hash: str
    entity: EntityRef
    url: str = ""
    site: str = ""
    status: str = ""
    date_added: Optional[date] = None


class FileStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SUCCEEDED_EMPTY = "succeeded_empty"  # no parsable line at all
    FAILED = "failed"
    FAILED_INCOMPLETE = "failed_incomplete"  # batch deadline hit


@dataclass
class FileResult:
    path: Path
    status: FileStatus
    records: int = 0
    lines_read: int = 0
    lines_malformed: int = 0
    lines_invalid: int = 0
    lines_unidentified: int = 0
    output_path: Optional[Path] = None
    error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status in (FileStatus.SUCCEEDED, FileStatus.SUCCEEDED_EMPTY)


@dataclass
class BatchSummary:
    index: int
    results: list[FileResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.succeeded)

    @property
    def incomplete(self) -> int:
        return sum(1 for r in self.results if r.status == FileStatus.FAILED_INCOMPLETE)

    @property
    def records(self) -> int:
        return sum(r.records for r in self.results)


class PartitionStatus(str, Enum):
    COMMITTED = "committed"
    FAILED = "failed"
    HALTED = "halted"


@dataclass
class PartitionResult:
    date_key: str
    group: str
    status: PartitionStatus
    files_total: int = 0
    files_succeeded: int = 0
    files_empty: int = 0
    files_failed: int = 0
    records_written: int = 0
    archive_path: Optional[str] = None
    error: Optional[str] = None
    duration_ms: float = 0.0


@dataclass
class GroupResult:
    group: str
    partitions: list[PartitionResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def committed(self) -> int:
        return sum(1 for p in self.partitions if p.status == PartitionStatus.COMMITTED)

    @property
    def failed(self) -> int:
        return sum(1 for p in self.partitions if p.status != PartitionStatus.COMMITTED)

    @property
    def records_written(self) -> int:
        return sum(p.records_written for p in self.partitions)

    @property
    def ok(self) -> bool:
        return self.error is None and self.failed == 0


@dataclass
class RunSummary:
    cycle_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    groups: list[GroupResult] = field(default_factory=list)
    halted: bool = False
    halt_reason: Optional[str] = None
    # Existence probe circuit breaker state at the end of the run
    probe_circuit: Optional[dict] = None

    @property
    def ok(self) -> bool:
        return not self.halted and all(g.ok for g in self.groups)

    def exit_code(self) -> int:
        if self.halted:
            return 2
        return 0 if self.ok else 1

    def to_dict(self) -> dict:
        return {
            "cycle_id": self.cycle_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "halted": self.halted,
            "halt_reason": self.halt_reason,
            "probe_circuit": self.probe_circuit,
            "groups": [
                {
                    "group": g.group,
                    "committed": g.committed,
                    "failed": g.failed,
                    "records_written": g.records_written,
                    "error": g.error,
                    "partitions": [
                        {
                            "date_key": p.date_key,
                            "status": p.status.value,
                            "files_total": p.files_total,
                            "files_succeeded": p.files_succeeded,
                            "files_empty": p.files_empty,
                            "files_failed": p.files_failed,
                            "records_written": p.records_written,
                            "archive_path": p.archive_path,
                            "error": p.error,
                        }
                        for p in g.partitions
                    ],
                }
                for g in self.groups
            ],
        }
