"""Pipeline coordinator: load -> dedup -> resumable filter -> annotate -> persist."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from acquisition import AcquiredItem, records_from_source
from errors import FatalError, PersistenceError
from identity import IdCounter, deduplicate
from models import PersistedEntry, Record, RecordStatus
from retry import RetryPolicy
from scheduler import AnnotationScheduler

LOGGER = logging.getLogger(__name__)

ALREADY_PROCESSED_REASON = "already_processed"
PREVIOUSLY_FAILED_REASON = "previously_failed"


class RunStage(str, Enum):
    LOADING = "loading"
    DEDUPLICATING = "deduplicating"
    FILTERING = "filtering"
    ANNOTATING = "annotating"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"


class Sink(Protocol):
    def already_processed(self, key: str) -> bool: ...

    def get_entry(self, key: str) -> PersistedEntry | None: ...

    def upsert(self, entry: PersistedEntry) -> bool: ...


@dataclass
class RunSummary:
    """What happened in one run; record lists keep encounter order."""

    stage: RunStage = RunStage.LOADING
    loaded: int = 0
    duplicates: list[Record] = field(default_factory=list)
    already_processed: list[Record] = field(default_factory=list)
    previously_failed: list[Record] = field(default_factory=list)
    id_conflicts: list[Record] = field(default_factory=list)
    pending: list[Record] = field(default_factory=list)
    abandoned: list[Record] = field(default_factory=list)
    annotated: int = 0
    failed: int = 0
    exhausted: int = 0
    persisted: int = 0
    dry_run: bool = False
    cancelled: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.stage is RunStage.COMPLETED

    @property
    def failures(self) -> list[Record]:
        return [r for r in self.pending if r.status in (RecordStatus.FAILED, RecordStatus.EXHAUSTED)]

    def counts(self) -> dict[str, int]:
        return {
            "loaded": self.loaded,
            "skipped_duplicate": len(self.duplicates),
            "skipped_already_processed": len(self.already_processed),
            "skipped_previously_failed": len(self.previously_failed),
            "skipped_id_conflict": len(self.id_conflicts),
            "annotated": self.annotated,
            "failed": self.failed,
            "exhausted": self.exhausted,
            "abandoned": len(self.abandoned),
            "persisted": self.persisted,
        }


class PipelineCoordinator:
    """Owns one run end to end and the run-level retry budget for the sink.

    Records reach the scheduler only after dedup and the resumable filter,
    and are written only once they hold a terminal status. Failed and
    exhausted records are written too (with their last error), so a later
    run can tell them apart from new work.
    """

    def __init__(
        self,
        sink: Sink,
        scheduler: AnnotationScheduler,
        counter: IdCounter | None = None,
        sink_policy: RetryPolicy | None = None,
        sink_failure_limit: int = 5,
        reset_failed: bool = False,
        limit: int | None = None,
        dry_run: bool = False,
        sleep: Callable[[float], object] = time.sleep,
    ) -> None:
        self.sink = sink
        self.scheduler = scheduler
        self.counter = counter or IdCounter()
        self.sink_policy = sink_policy or RetryPolicy(max_attempts=3, base_delay=1.0)
        self.sink_failure_limit = sink_failure_limit
        self.reset_failed = reset_failed
        self.limit = limit
        self.dry_run = dry_run
        self._sleep = sleep

        self._lock = threading.Lock()
        self._persisted = 0
        self._unpersisted: list[Record] = []
        self._fatal: str | None = None
        self._operator_cancelled = False

    def cancel(self) -> None:
        """Operator interrupt: stop submitting work and drain."""
        with self._lock:
            self._operator_cancelled = True
        self.scheduler.cancel()

    def run(self, source: Iterable[AcquiredItem]) -> RunSummary:
        summary = RunSummary(dry_run=self.dry_run)
        with self._lock:
            self._persisted = 0
            self._unpersisted = []
            self._fatal = None
            self._operator_cancelled = False

        try:
            self._enter(summary, RunStage.LOADING)
            records = records_from_source(source)
            summary.loaded = len(records)
            if not records:
                raise FatalError("Acquisition source yielded zero records")

            self._enter(summary, RunStage.DEDUPLICATING)
            dedup = deduplicate(records, self.counter, lookup=self._lookup)
            summary.duplicates = dedup.duplicates
            summary.id_conflicts = dedup.conflicts

            self._enter(summary, RunStage.FILTERING)
            pending = self._filter(dedup.kept, summary)
            if self.limit is not None and len(pending) > self.limit:
                LOGGER.info("Limit: annotating %s of %s pending records", self.limit, len(pending))
                pending = pending[: self.limit]
            summary.pending = pending

            if self.dry_run:
                for record in pending:
                    LOGGER.info("[dry-run] Would annotate id=%s key=%s", record.record_id, record.identity_key)
                self._enter(summary, RunStage.COMPLETED)
                return summary

            self._enter(summary, RunStage.ANNOTATING)
            report = self.scheduler.run(pending, on_terminal=self._persist)
            summary.annotated = report.annotated
            summary.failed = report.failed
            summary.exhausted = report.exhausted
            summary.abandoned = report.abandoned

            self._enter(summary, RunStage.PERSISTING)
            self._flush_unpersisted()

            with self._lock:
                summary.persisted = self._persisted
                summary.cancelled = self._operator_cancelled or report.cancelled
            if summary.cancelled:
                raise FatalError(f"Run cancelled; {len(summary.abandoned)} records left unprocessed")

            self._enter(summary, RunStage.COMPLETED)
        except FatalError as exc:
            with self._lock:
                summary.persisted = self._persisted
            summary.error = str(exc)
            LOGGER.error("Run failed during %s: %s", summary.stage.value, exc)
            summary.stage = RunStage.FAILED
        return summary

    def _enter(self, summary: RunSummary, stage: RunStage) -> None:
        LOGGER.info("Run stage: %s -> %s", summary.stage.value, stage.value)
        summary.stage = stage

    def _filter(self, records: list[Record], summary: RunSummary) -> list[Record]:
        pending: list[Record] = []
        for record in records:
            if self._sink_call(lambda: self.sink.already_processed(record.identity_key), f"lookup id={record.record_id}"):
                record.mark_skipped(ALREADY_PROCESSED_REASON)
                summary.already_processed.append(record)
                continue

            if not self.reset_failed:
                entry = self._lookup(record.identity_key)
                if entry is not None and entry.status == RecordStatus.FAILED.value:
                    record.mark_skipped(PREVIOUSLY_FAILED_REASON)
                    summary.previously_failed.append(record)
                    LOGGER.info("Skipping previously failed key=%s (use reset to retry)", record.identity_key)
                    continue

            pending.append(record)

        LOGGER.info(
            "Resumable filter: total=%s pending=%s skipped=%s",
            len(records),
            len(pending),
            len(records) - len(pending),
        )
        return pending

    def _lookup(self, key: str) -> PersistedEntry | None:
        return self._sink_call(lambda: self.sink.get_entry(key), f"lookup key={key}")

    def _sink_call(self, fn: Callable[[], object], label: str) -> Any:
        try:
            return self.sink_policy.call(
                fn,
                retry_on=(PersistenceError,),
                sleep=self._sleep,
                label=f"Sink {label}",
            )
        except PersistenceError as exc:
            raise FatalError(f"Sink unreachable during {label}: {exc}") from exc

    def _persist(self, record: Record) -> None:
        """Terminal-record hook; runs on the scheduler's worker thread."""
        entry = PersistedEntry.from_record(record, self.scheduler.schema.name)
        try:
            self.sink_policy.call(
                lambda: self.sink.upsert(entry),
                retry_on=(PersistenceError,),
                sleep=self._sleep,
                label=f"Upsert id={record.record_id}",
            )
        except PersistenceError as exc:
            LOGGER.error("Persisting id=%s failed after retries: %s", record.record_id, exc)
            with self._lock:
                self._unpersisted.append(record)
                too_many = len(self._unpersisted) >= self.sink_failure_limit and self._fatal is None
                if too_many:
                    self._fatal = f"Sink failed {len(self._unpersisted)} writes: {exc}"
            if too_many:
                self.scheduler.cancel()
            return

        with self._lock:
            self._persisted += 1

    def _flush_unpersisted(self) -> None:
        with self._lock:
            backlog = list(self._unpersisted)
            fatal = self._fatal
        if fatal:
            raise FatalError(fatal)
        if not backlog:
            return

        LOGGER.info("Retrying %s writes that failed during annotation", len(backlog))
        still_failing: list[str] = []
        for record in backlog:
            entry = PersistedEntry.from_record(record, self.scheduler.schema.name)
            try:
                self.sink_policy.call(
                    lambda: self.sink.upsert(entry),
                    retry_on=(PersistenceError,),
                    sleep=self._sleep,
                    label=f"Upsert id={record.record_id}",
                )
            except PersistenceError as exc:
                LOGGER.error("Final write for id=%s failed: %s", record.record_id, exc)
                still_failing.append(record.record_id)
                continue
            with self._lock:
                self._persisted += 1
                self._unpersisted.remove(record)

        if still_failing:
            raise FatalError(f"Sink unreachable; unpersisted ids: {', '.join(still_failing)}")
