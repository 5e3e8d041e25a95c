"""Bounded-concurrency annotation scheduler.

Each pending record becomes an ``AnnotationJob`` run on a worker thread.
A job calls the annotator, hands the text to the output parser, and retries
transport and validation failures under the ``RetryPolicy``. Every job that
starts ends in exactly one terminal state unless the run is cancelled
before it finishes, in which case the record is reported as abandoned and
left NEW so the next run picks it up.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Protocol

from annotation_schema import AnnotationSchema
from errors import ExhaustedError, TransportError, ValidationError
from models import AnnotationJob, JobState, Record, RecordStatus
from output_parser import parse_annotation
from retry import RetryPolicy

LOGGER = logging.getLogger(__name__)

_POLL_SECONDS = 0.2

_JOB_TO_RECORD_STATUS = {
    JobState.SUCCEEDED: RecordStatus.ANNOTATED,
    JobState.FAILED: RecordStatus.FAILED,
    JobState.EXHAUSTED: RecordStatus.EXHAUSTED,
}


class Annotator(Protocol):
    """Annotation capability: prompt context + payload + schema -> raw text.

    Raises ``TransportError`` on transport or service failures. Must not
    retry on its own.
    """

    def __call__(self, prompt_context: str, payload: str, schema: AnnotationSchema) -> str: ...


@dataclass(slots=True)
class SchedulerReport:
    submitted: int = 0
    annotated: int = 0
    failed: int = 0
    exhausted: int = 0
    peak_in_flight: int = 0
    cancelled: bool = False
    abandoned: list[Record] = field(default_factory=list)

    @property
    def failures(self) -> int:
        return self.failed + self.exhausted


@dataclass(frozen=True, slots=True)
class _Outcome:
    state: JobState
    value: dict[str, Any] | None = None
    error: Exception | None = None


def describe_error(exc: BaseException | None) -> str:
    if exc is None:
        return ""
    text = f"{type(exc).__name__}: {exc}"
    if isinstance(exc, ValidationError) and exc.raw_text:
        text += f" (raw={exc.raw_text!r})"
    return text


class AnnotationScheduler:
    """Drive the annotator over many records with at most ``concurrency`` in flight."""

    def __init__(
        self,
        annotator: Annotator,
        schema: AnnotationSchema,
        policy: RetryPolicy,
        concurrency: int = 4,
        prompt_context: str = "",
        grace_period: float = 10.0,
        sleep: Callable[[float], bool] | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.annotator = annotator
        self.schema = schema
        self.policy = policy
        self.concurrency = concurrency
        self.prompt_context = prompt_context
        self.grace_period = grace_period

        self._cancel_event = threading.Event()
        # Backoff waits return True when the run was cancelled meanwhile.
        self._sleep = sleep or self._cancel_event.wait
        self._lock = threading.Lock()
        self._abandoning = False
        self._in_flight = 0
        self._report = SchedulerReport()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Stop submitting jobs; in-flight jobs get ``grace_period`` to finish."""
        if not self._cancel_event.is_set():
            LOGGER.warning("Annotation scheduler cancelled; draining in-flight jobs")
        self._cancel_event.set()

    def run(
        self,
        records: Iterable[Record],
        on_terminal: Callable[[Record], None] | None = None,
    ) -> SchedulerReport:
        """Annotate ``records`` and return aggregate counts.

        ``on_terminal`` runs on the worker thread right after a record
        reaches its terminal state.
        """
        with self._lock:
            self._report = SchedulerReport()
            self._abandoning = False
            self._in_flight = 0

        slots = threading.BoundedSemaphore(self.concurrency)
        futures: dict[Future[None], AnnotationJob] = {}
        never_started: list[Record] = []
        executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="annotate")

        try:
            for record in records:
                if record.status is not RecordStatus.NEW:
                    LOGGER.debug("Scheduler: ignoring record id=%s in status %s", record.record_id, record.status.value)
                    continue
                if not self._acquire_slot(slots):
                    never_started.append(record)
                    continue
                job = AnnotationJob(record=record)
                future = executor.submit(self._run_job, job, on_terminal)
                future.add_done_callback(lambda _f: slots.release())
                futures[future] = job

            with self._lock:
                self._report.submitted = len(futures)
            LOGGER.info(
                "Scheduler: submitted=%s concurrency=%s max_attempts=%s",
                len(futures),
                self.concurrency,
                self.policy.max_attempts,
            )
            leftover = self._drain(futures)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        abandoned = [futures[f].record for f in leftover] + never_started
        abandoned += [job.record for f, job in futures.items() if f not in leftover and not job.resolved]

        with self._lock:
            report = self._report
            report.cancelled = self.cancelled
            report.abandoned = abandoned

        LOGGER.info(
            "Scheduler: done annotated=%s failed=%s exhausted=%s abandoned=%s peak_in_flight=%s",
            report.annotated,
            report.failed,
            report.exhausted,
            len(report.abandoned),
            report.peak_in_flight,
        )
        return report

    def _acquire_slot(self, slots: threading.BoundedSemaphore) -> bool:
        while not self._cancel_event.is_set():
            if not slots.acquire(timeout=_POLL_SECONDS):
                continue
            if self._cancel_event.is_set():
                slots.release()
                return False
            return True
        return False

    def _drain(self, futures: dict[Future[None], AnnotationJob]) -> set[Future[None]]:
        """Wait for every future; after cancellation only for ``grace_period``.

        Returns the futures still running when the grace period ran out.
        """
        pending: set[Future[None]] = set(futures)
        deadline: float | None = None

        while pending:
            if self.cancelled and deadline is None:
                deadline = time.monotonic() + self.grace_period
            timeout = _POLL_SECONDS if deadline is None else max(0.0, deadline - time.monotonic())
            done, pending = wait(pending, timeout=timeout, return_when=FIRST_COMPLETED)
            for future in done:
                self._collect(future, futures[future])
            if deadline is not None and time.monotonic() >= deadline and pending:
                break

        if not pending:
            return pending

        with self._lock:
            self._abandoning = True
        # Jobs that already reached a terminal state are inside on_terminal;
        # let them finish so nothing is left half written.
        finishing = {f for f in pending if futures[f].resolved}
        if finishing:
            for future in wait(finishing).done:
                self._collect(future, futures[future])
        leftover = pending - finishing
        LOGGER.warning(
            "Scheduler: abandoning %s in-flight jobs after %.1fs grace period; "
            "exit waits until their calls return or time out",
            len(leftover),
            self.grace_period,
        )
        return leftover

    def _collect(self, future: Future[None], job: AnnotationJob) -> None:
        exc = future.exception()
        if exc is not None:
            LOGGER.error(
                "Scheduler: completion handler failed for id=%s: %s",
                job.record.record_id,
                exc,
                exc_info=exc,
            )

    def _run_job(self, job: AnnotationJob, on_terminal: Callable[[Record], None] | None) -> None:
        with self._lock:
            job.state = JobState.IN_FLIGHT
            self._in_flight += 1
            self._report.peak_in_flight = max(self._report.peak_in_flight, self._in_flight)
        try:
            outcome = self._attempt_loop(job)
        finally:
            with self._lock:
                self._in_flight -= 1

        if outcome is None or not self._finalize(job, outcome):
            return
        if on_terminal is not None:
            on_terminal(job.record)

    def _attempt_loop(self, job: AnnotationJob) -> _Outcome | None:
        record = job.record
        last_error: Exception | None = None

        for attempt in self.policy.attempts():
            delay = self.policy.delay_before(attempt)
            if delay > 0 and self._sleep(delay):
                return None
            if self.cancelled:
                return None

            job.attempt = attempt
            record.attempts = attempt
            try:
                text = self.annotator(self.prompt_context, record.raw_payload, self.schema)
            except TransportError as exc:
                last_error = exc
                LOGGER.warning(
                    "Annotation transport failure for id=%s on attempt %s/%s: %s",
                    record.record_id,
                    attempt,
                    self.policy.max_attempts,
                    exc,
                )
                continue
            except Exception as exc:  # annotator bug: terminal for this record only
                LOGGER.exception("Annotation failed unexpectedly for id=%s", record.record_id)
                return _Outcome(JobState.FAILED, error=exc)

            parsed = parse_annotation(text, self.schema)
            if parsed.ok:
                LOGGER.info("Annotation succeeded for id=%s on attempt %s (%s parse)", record.record_id, attempt, parsed.stage)
                return _Outcome(JobState.SUCCEEDED, value=parsed.value)

            last_error = parsed.error
            LOGGER.warning(
                "Annotation output invalid for id=%s on attempt %s/%s: %s",
                record.record_id,
                attempt,
                self.policy.max_attempts,
                parsed.error,
            )

        if isinstance(last_error, TransportError):
            return _Outcome(
                JobState.EXHAUSTED,
                error=ExhaustedError(record.record_id, self.policy.max_attempts, last_error),
            )
        return _Outcome(JobState.FAILED, error=last_error)

    def _finalize(self, job: AnnotationJob, outcome: _Outcome) -> bool:
        """Apply the single terminal transition; False if it must not happen."""
        record = job.record
        with self._lock:
            if job.resolved or self._abandoning:
                return False
            job.state = outcome.state
            record.status = _JOB_TO_RECORD_STATUS[outcome.state]
            record.annotation = outcome.value
            record.last_error = describe_error(outcome.error) or None
            record.touch()
            if outcome.state is JobState.SUCCEEDED:
                self._report.annotated += 1
            elif outcome.state is JobState.EXHAUSTED:
                self._report.exhausted += 1
            else:
                self._report.failed += 1

        if outcome.state is not JobState.SUCCEEDED:
            LOGGER.error("Record id=%s ended %s: %s", record.record_id, record.status.value, record.last_error)
        return True
