"""Post-run reporting: summary log lines plus a CSV of records needing attention.

The failures CSV lists every record that ended FAILED or EXHAUSTED, any
record abandoned by a cancelled run, and any record skipped for an id
conflict, with its last error so it can be inspected by hand and re-run
with ``--reset-failed``.
"""

from __future__ import annotations

import csv
import logging
import os
from pathlib import Path

from errors import truncate_raw
from models import Record
from pipeline import RunSummary

LOGGER = logging.getLogger(__name__)

FAILURES_REPORT_PATH = os.getenv("FAILURES_REPORT_PATH", "annotation_failures.csv")

FAILURE_COLUMNS = [
    "id",
    "identity_key",
    "status",
    "attempts",
    "last_error",
    "source_locator",
]

_ERROR_MAX_LEN = 500


def log_summary(summary: RunSummary) -> None:
    """Log outcome counts, then skipped and failed records in encounter order."""
    counts = summary.counts()
    LOGGER.info(
        "Run %s. loaded=%s skipped_duplicate=%s skipped_already_processed=%s "
        "skipped_previously_failed=%s skipped_id_conflict=%s "
        "annotated=%s failed=%s exhausted=%s abandoned=%s persisted=%s",
        summary.stage.value,
        counts["loaded"],
        counts["skipped_duplicate"],
        counts["skipped_already_processed"],
        counts["skipped_previously_failed"],
        counts["skipped_id_conflict"],
        counts["annotated"],
        counts["failed"],
        counts["exhausted"],
        counts["abandoned"],
        counts["persisted"],
    )
    if summary.dry_run:
        LOGGER.info("Dry run: %s records would be annotated", len(summary.pending))

    for record in summary.duplicates:
        LOGGER.info("  duplicate: key=%s (%s)", record.identity_key, record.source_locator)
    for record in summary.already_processed:
        LOGGER.info("  skipped: id=%s key=%s reason=%s", record.record_id, record.identity_key, record.skip_reason)
    for record in summary.previously_failed:
        LOGGER.info("  previously failed: id=%s key=%s (use --reset-failed to retry)", record.record_id, record.identity_key)
    for record in summary.id_conflicts:
        LOGGER.warning("  id conflict: key=%s error=%s", record.identity_key, record.last_error)
    for record in summary.failures:
        LOGGER.warning("  %s: id=%s key=%s error=%s", record.status.value, record.record_id, record.identity_key, record.last_error)
    if summary.error:
        LOGGER.error("Run error: %s", summary.error)


def write_failures_csv(summary: RunSummary, path: str = FAILURES_REPORT_PATH) -> int:
    """Write the failures report; returns the number of rows written."""
    rows = [_failure_row(record) for record in [*summary.failures, *summary.abandoned, *summary.id_conflicts]]
    out = Path(path)
    if out.parent and not out.parent.exists():
        out.parent.mkdir(parents=True, exist_ok=True)

    with out.open("w", newline="", encoding="utf-8") as fh:
        writer = csv.DictWriter(fh, fieldnames=FAILURE_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)

    LOGGER.info("Wrote %s rows to %s", len(rows), out)
    return len(rows)


def _failure_row(record: Record) -> dict[str, object]:
    return {
        "id": record.record_id,
        "identity_key": record.identity_key,
        "status": record.status.value,
        "attempts": record.attempts,
        "last_error": truncate_raw((record.last_error or "").strip(), max_len=_ERROR_MAX_LEN),
        "source_locator": record.source_locator,
    }
