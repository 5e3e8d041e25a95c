"""Shared typed models for the annotation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class RecordStatus(str, Enum):
    NEW = "new"
    ANNOTATED = "annotated"
    FAILED = "failed"
    EXHAUSTED = "exhausted"
    SKIPPED = "skipped"


TERMINAL_STATUSES: frozenset[RecordStatus] = frozenset({
    RecordStatus.ANNOTATED,
    RecordStatus.FAILED,
    RecordStatus.EXHAUSTED,
})


class JobState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class Record:
    """One unit of acquired content moving through the pipeline.

    ``record_id`` may start empty; once a non-empty id has been set it can
    not be changed.
    """

    identity_key: str
    raw_payload: str
    source_locator: str
    record_id: str = ""
    status: RecordStatus = RecordStatus.NEW
    annotation: dict[str, Any] | None = None
    attempts: int = 0
    last_error: str | None = None
    skip_reason: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "record_id":
            current = getattr(self, "record_id", "")
            if current and value != current:
                raise AttributeError(f"record_id is immutable once assigned (current={current})")
        object.__setattr__(self, name, value)

    def touch(self) -> None:
        self.updated_at = utc_now()

    def mark_skipped(self, reason: str) -> None:
        self.status = RecordStatus.SKIPPED
        self.skip_reason = reason
        self.touch()


@dataclass(slots=True)
class AnnotationJob:
    """Scheduler-owned wrapper tracking one record's attempts."""

    record: Record
    attempt: int = 0
    state: JobState = JobState.PENDING

    @property
    def resolved(self) -> bool:
        return self.state in (JobState.SUCCEEDED, JobState.FAILED, JobState.EXHAUSTED)


@dataclass(frozen=True, slots=True)
class PersistedEntry:
    """Durable projection of a record, keyed by ``entry_id``."""

    entry_id: str
    identity_key: str
    source_locator: str
    status: str
    annotation: dict[str, Any] | None
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: Record, schema_name: str = "") -> PersistedEntry:
        metadata: dict[str, Any] = {
            "attempts": record.attempts,
            "last_error": record.last_error,
        }
        if schema_name:
            metadata["schema"] = schema_name
        return cls(
            entry_id=record.record_id,
            identity_key=record.identity_key,
            source_locator=record.source_locator,
            status=record.status.value,
            annotation=record.annotation,
            metadata=metadata,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    def same_content(self, other: PersistedEntry) -> bool:
        """True when both entries differ at most in their timestamps."""
        return (
            self.entry_id == other.entry_id
            and self.identity_key == other.identity_key
            and self.source_locator == other.source_locator
            and self.status == other.status
            and self.annotation == other.annotation
            and self.metadata == other.metadata
        )
