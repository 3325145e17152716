"""Tests for pipeline domain models."""

import json
from datetime import datetime, timezone
from pathlib import Path

from logarchive.models import (
    BatchSummary,
    EntityRef,
    FileResult,
    FileStatus,
    GroupResult,
    PartitionResult,
    PartitionStatus,
    ResolvedEntity,
    RunSummary,
    UnresolvedCandidate,
)


def _partition(status, records=0):
    return PartitionResult(date_key="20240101", group="main", status=status, records_written=records)


class TestResolvedEntity:
    def test_to_line_is_compact_json(self):
        entity = ResolvedEntity(
            entity=EntityRef(table="content.articles", entity_id="7"),
            client_hash="abc",
            date_key="20240101",
        )

        line = entity.to_line()

        assert line == '{"db":"content.articles","id":"7","ip":"abc","date":"20240101"}'
        assert json.loads(line)["id"] == "7"

    def test_equal_entities_produce_equal_lines(self):
        a = ResolvedEntity(EntityRef("content.articles", "7"), "abc", "20240101")
        b = ResolvedEntity(EntityRef("content.articles", "7"), "abc", "20240101")
        assert a.to_line() == b.to_line()


class TestUnresolvedCandidate:
    def test_url_joins_host_and_path(self):
        candidate = UnresolvedCandidate("www.example.com", "/a.html", "/var/www/a.html")
        assert candidate.url == "www.example.com/a.html"


class TestFileResult:
    def test_succeeded_statuses(self):
        assert FileResult(Path("a"), FileStatus.SUCCEEDED).succeeded
        assert FileResult(Path("a"), FileStatus.SUCCEEDED_EMPTY).succeeded
        assert not FileResult(Path("a"), FileStatus.FAILED).succeeded
        assert not FileResult(Path("a"), FileStatus.FAILED_INCOMPLETE).succeeded


class TestBatchSummary:
    def test_counts(self):
        summary = BatchSummary(
            index=0,
            results=[
                FileResult(Path("a"), FileStatus.SUCCEEDED, records=3),
                FileResult(Path("b"), FileStatus.SUCCEEDED_EMPTY),
                FileResult(Path("c"), FileStatus.FAILED),
                FileResult(Path("d"), FileStatus.FAILED_INCOMPLETE),
            ],
        )

        assert summary.succeeded == 2
        assert summary.failed == 2
        assert summary.incomplete == 1
        assert summary.records == 3


class TestRunSummary:
    def _summary(self, *groups, halted=False):
        return RunSummary(
            cycle_id="c-1",
            started_at=datetime(2024, 1, 2, tzinfo=timezone.utc),
            groups=list(groups),
            halted=halted,
        )

    def test_all_committed_exits_zero(self):
        group = GroupResult("main", [_partition(PartitionStatus.COMMITTED, 5)])
        summary = self._summary(group)

        assert summary.ok
        assert summary.exit_code() == 0
        assert group.records_written == 5

    def test_failed_partition_exits_one(self):
        group = GroupResult(
            "main",
            [_partition(PartitionStatus.COMMITTED), _partition(PartitionStatus.FAILED)],
        )

        assert group.committed == 1
        assert group.failed == 1
        assert self._summary(group).exit_code() == 1

    def test_group_error_exits_one(self):
        assert self._summary(GroupResult("main", error="catalog failed")).exit_code() == 1

    def test_halted_exits_two(self):
        group = GroupResult("main", [_partition(PartitionStatus.HALTED)])
        assert self._summary(group, halted=True).exit_code() == 2

    def test_to_dict(self):
        group = GroupResult("main", [_partition(PartitionStatus.COMMITTED, 5)])
        data = self._summary(group).to_dict()

        assert data["cycle_id"] == "c-1"
        assert data["groups"][0]["committed"] == 1
        assert data["groups"][0]["partitions"][0]["status"] == "committed"
        assert data["groups"][0]["partitions"][0]["records_written"] == 5
        assert data["probe_circuit"] is None
