"""Error taxonomy for the annotation pipeline.

Per-record errors (transport, parse, validation, exhausted) stay local to
the record that raised them. Persistence and fatal errors are run-level.
"""

from __future__ import annotations

_RAW_TEXT_MAX_LEN = 200


def truncate_raw(text: str | None, max_len: int = _RAW_TEXT_MAX_LEN) -> str:
    """Clip raw service output for diagnostics."""
    value = text if isinstance(text, str) else ""
    if len(value) > max_len:
        return value[: max_len - 1] + "…"
    return value


class PipelineError(Exception):
    """Base exception for pipeline operations."""


class TransportError(PipelineError):
    """One annotation attempt failed at the transport or service level."""


class ValidationError(PipelineError):
    """Annotation output did not satisfy the expected schema."""

    def __init__(self, message: str, raw_text: str | None = None, path: str = "") -> None:
        self.raw_text = truncate_raw(raw_text)
        self.path = path
        detail = f"{path}: {message}" if path else message
        super().__init__(detail)


class ParseError(ValidationError):
    """Annotation output could not be parsed into a JSON object at all."""


class ExhaustedError(PipelineError):
    """Every allowed annotation attempt was consumed without success."""

    def __init__(self, record_id: str, attempts: int, last_error: Exception | None) -> None:
        self.record_id = record_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"record {record_id} exhausted after {attempts} attempts: {last_error}")


class PersistenceError(PipelineError):
    """The persistence sink rejected or failed a read or write."""


class FatalError(PipelineError):
    """Systemic failure that aborts the whole run."""
