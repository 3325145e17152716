"""
Run orchestration: groups -> pending partitions -> stages.

Per partition: fetch -> classify (batch runner) -> merge -> upload, verify,
commit. Partition-fatal errors are logged and the next partition proceeds;
an archive verification failure stops the run. After each group the
identifier cache is flushed and side-channel logs are de-duplicated.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from config.config import ArchiverConfig, DatabaseSettings, GroupConfig
from core.errors.exceptions import PipelineError
from core.logging.context_managers import LogContext, StageLogContext
from core.logging.setup import generate_cycle_id
from core.logging.utilities import log_exception
from core.resilience.circuit_breaker import PROBE_CIRCUIT_CONFIG, CircuitBreaker
from logarchive.archive import (
    ArchiveVerifier,
    ArchiveWriter,
    RcloneArchiveWriter,
    S3ArchiveWriter,
    UploadVerifyCommit,
)
from logarchive.catalog import PartitionCatalog
from logarchive.classifier import LineClassifier
from logarchive.fetcher import Fetcher
from logarchive.identifiers import IdentifierCache
from logarchive.merge import MergeStage
from logarchive.models import (
    FileStatus,
    GroupResult,
    Partition,
    PartitionResult,
    PartitionStatus,
    RunSummary,
)
from logarchive.probe import ExistenceBatcher
from logarchive.resolver import RuleBasedResolver
from logarchive.runner import BatchRunner
from logarchive.sidechannel import SideChannelLogs
from logarchive.state import StateStore
from logarchive.storage import ObjectStore

logger = logging.getLogger(__name__)


class PartitionFilesFailed(PipelineError):
    """Some files failed and the group is configured to fail the partition for it."""


@dataclass
class GroupComponents:
    state: StateStore
    cache: IdentifierCache
    logs: SideChannelLogs
    runner: BatchRunner
    merge: MergeStage
    commit: UploadVerifyCommit


class ArchivePipeline:
    """
    Runs every enabled group once.

    Stores are injectable so tests can pass fakes; by default they are
    built from the configuration.

    Example:
        pipeline = ArchivePipeline(config)
        summary = await pipeline.run()
        sys.exit(summary.exit_code())
    """

    def __init__(
        self,
        config: ArchiverConfig,
        source_store: Optional[ObjectStore] = None,
        writer_store: Optional[ObjectStore] = None,
        reader_store: Optional[ObjectStore] = None,
        state_stores: Optional[Dict[str, StateStore]] = None,
        breaker: Optional[CircuitBreaker] = None,
        cycle_id: Optional[str] = None,
    ):
        self.config = config
        self.cycle_id = cycle_id or generate_cycle_id()
        self.source_store = source_store or ObjectStore(config.source, name="source")
        self.writer_store = writer_store or ObjectStore(config.archive_writer, name="archive_writer")
        self.reader_store = reader_store or ObjectStore(config.archive_reader, name="archive_reader")
        # Keyed by database URL so groups sharing a database share a pool
        self._state_stores: Dict[str, StateStore] = dict(state_stores or {})
        self.breaker = breaker or CircuitBreaker("probe", PROBE_CIRCUIT_CONFIG)
        self.fetcher = Fetcher(self.source_store, config.fetch)

    # =========================================================================
    # Component wiring
    # =========================================================================

    def state_for(self, group: GroupConfig) -> StateStore:
        settings: DatabaseSettings = self.config.database_for(group)
        store = self._state_stores.get(settings.url)
        if store is None:
            store = StateStore(settings)
            if settings.create_tables:
                try:
                    store.create_tables()
                except PipelineError:
                    store.close()
                    raise
            self._state_stores[settings.url] = store
        return store

    def _writer(self) -> ArchiveWriter:
        if self.config.archive.writer == "rclone":
            return RcloneArchiveWriter(self.config.archive)
        return S3ArchiveWriter(self.writer_store)

    def _components(self, group: GroupConfig, state: StateStore, cache: IdentifierCache) -> GroupComponents:
        logs = SideChannelLogs.for_group(Path(self.config.side_channel_dir), group.name)
        resolver = RuleBasedResolver(
            group.resolver,
            cache,
            state,
            site=group.name,
            unmapped_log=logs.unmapped,
        )
        batcher = ExistenceBatcher(self.config.probe, self.breaker, logs.notfound)
        classifier = LineClassifier(
            resolver,
            batcher,
            host_aliases=group.host_aliases,
            doc_root=group.doc_root,
            probe_batch_size=self.config.probe.batch_size,
            yield_every_lines=self.config.runner.yield_every_lines,
        )
        verifier = ArchiveVerifier(self.reader_store, self.config.archive.diagnostics_list_limit)
        return GroupComponents(
            state=state,
            cache=cache,
            logs=logs,
            runner=BatchRunner(classifier, self.config.runner),
            merge=MergeStage(self.config.merge),
            commit=UploadVerifyCommit(self._writer(), verifier, state, self.config.archive),
        )

    def close(self) -> None:
        for store in self._state_stores.values():
            store.close()

    # =========================================================================
    # Run
    # =========================================================================

    async def list_pending(self, group_names: Optional[List[str]] = None) -> Dict[str, List[str]]:
        """Pending date keys per group, without processing anything."""
        pending: Dict[str, List[str]] = {}
        for group in self.config.enabled_groups(group_names):
            with LogContext(cycle_id=self.cycle_id, group=group.name):
                catalog = PartitionCatalog(self.source_store, self.state_for(group), self.config)
                pending[group.name] = [p.date_key for p in await catalog.pending(group)]
        return pending

    async def run(self, group_names: Optional[List[str]] = None) -> RunSummary:
        summary = RunSummary(cycle_id=self.cycle_id, started_at=datetime.now(timezone.utc))

        for group in self.config.enabled_groups(group_names):
            with LogContext(cycle_id=self.cycle_id, group=group.name):
                result = await self.run_group(group, summary)
            summary.groups.append(result)
            if summary.halted:
                break

        summary.finished_at = datetime.now(timezone.utc)
        summary.probe_circuit = self.breaker.get_diagnostics()
        log_run_summary(summary)
        return summary

    async def run_group(self, group: GroupConfig, summary: RunSummary) -> GroupResult:
        result = GroupResult(group=group.name)

        try:
            state = self.state_for(group)
            cache = IdentifierCache(state, self.config.identifiers.flush_size)
            await cache.load()
            partitions = await PartitionCatalog(self.source_store, state, self.config).pending(group)
        except PipelineError as e:
            log_exception(logger, e, f"Group {group.name} could not start")
            result.error = str(e)
            return result

        components = self._components(group, state, cache)
        try:
            for partition in partitions:
                with LogContext(partition=partition.date_key):
                    partition_result = await self.process_partition(group, partition, components)
                result.partitions.append(partition_result)
                if partition_result.status == PartitionStatus.HALTED:
                    summary.halted = True
                    summary.halt_reason = partition_result.error
                    break
        finally:
            await self._finish_group(group, components)

        return result

    async def _finish_group(self, group: GroupConfig, components: GroupComponents) -> None:
        try:
            await components.cache.flush()
        except PipelineError as e:
            log_exception(
                logger,
                e,
                f"Identifier flush failed for group {group.name}",
                cache_size=components.cache.pending_count,
            )
        components.logs.dedupe_all()

    async def process_partition(
        self, group: GroupConfig, partition: Partition, components: GroupComponents
    ) -> PartitionResult:
        start = time.perf_counter()
        result = PartitionResult(
            date_key=partition.date_key, group=group.name, status=PartitionStatus.FAILED
        )

        try:
            with StageLogContext("fetch") as stage:
                staged = await self.fetcher.fetch(partition, group.source_bucket)
                stage.set_result(objects_total=len(staged), bucket=group.source_bucket)

            with StageLogContext("classify") as stage:
                summaries = await components.runner.run(partition, staged)
                stage.set_result(files_total=sum(len(s.results) for s in summaries))
            files = [r for s in summaries for r in s.results]
            result.files_total = len(files)
            result.files_succeeded = sum(1 for r in files if r.status == FileStatus.SUCCEEDED)
            result.files_empty = sum(1 for r in files if r.status == FileStatus.SUCCEEDED_EMPTY)
            result.files_failed = sum(1 for r in files if not r.succeeded)

            if result.files_failed and self.config.runner.fail_partition_on_file_errors:
                raise PartitionFilesFailed(
                    f"{result.files_failed} of {result.files_total} files failed",
                    context={"date_key": partition.date_key},
                )

            with StageLogContext("merge") as stage:
                artifact = await components.merge.merge(partition, files)
                stage.set_result(
                    strategy=artifact.strategy.value, lines_in=artifact.lines_in, lines_out=artifact.lines_out
                )
            result.records_written = artifact.lines_out

            with StageLogContext("archive") as stage:
                commit = await components.commit.run(partition, artifact.path, group.archive_bucket)
                stage.set_result(archive_path=commit.archive_path)
            result.archive_path = commit.archive_path
            result.status = PartitionStatus.COMMITTED

        except PipelineError as e:
            result.error = str(e)
            if getattr(e, "halts_run", False):
                result.status = PartitionStatus.HALTED
                log_exception(logger, e, f"Halting run: partition {partition.date_key} failed verification")
            else:
                log_exception(logger, e, f"Partition {partition.date_key} failed")

        result.duration_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "Partition %s %s",
            partition.date_key,
            result.status.value,
            extra={
                "date_key": partition.date_key,
                "files_total": result.files_total,
                "files_succeeded": result.files_succeeded,
                "files_empty": result.files_empty,
                "files_failed": result.files_failed,
                "records_written": result.records_written,
                "archive_path": result.archive_path,
                "duration_ms": result.duration_ms,
            },
        )
        return result


def log_run_summary(summary: RunSummary) -> None:
    lines = [f"Run {summary.cycle_id} summary:"]
    for group in summary.groups:
        lines.append(
            f"  {group.group}: {group.committed} committed, {group.failed} failed, "
            f"records={group.records_written}"
            + (f" | error: {group.error}" if group.error else "")
        )
        for p in group.partitions:
            lines.append(
                f"    {p.date_key} {p.status.value}: files={p.files_total} "
                f"(ok={p.files_succeeded}, empty={p.files_empty}, failed={p.files_failed}) "
                f"records={p.records_written}"
                + (f" | {p.error}" if p.error else "")
            )
    if summary.probe_circuit and summary.probe_circuit["state"] == "open":
        lines.append(f"  probe disabled: {summary.probe_circuit['trip_reason']}")
    if summary.halted:
        lines.append(f"  HALTED: {summary.halt_reason}")

    committed = sum(g.committed for g in summary.groups)
    failed = sum(g.failed for g in summary.groups)
    logger.info(
        "\n".join(lines),
        extra={
            "partitions_total": committed + failed,
            "partitions_committed": committed,
            "partitions_failed": failed,
        },
    )
