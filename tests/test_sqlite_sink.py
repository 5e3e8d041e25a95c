from __future__ import annotations

import sqlite3
import threading
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from errors import PersistenceError
from models import PersistedEntry
from sqlite_sink import SqliteSink

_T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def _entry(entry_id: str = "pub_001", key: str = "https://example.com/a", **overrides) -> PersistedEntry:
    base = PersistedEntry(
        entry_id=entry_id,
        identity_key=key,
        source_locator="input.jsonl:1",
        status="annotated",
        annotation={"title": "T", "category": "news", "content": "C"},
        metadata={"attempts": 1, "last_error": None},
        created_at=_T0,
        updated_at=_T0,
    )
    return replace(base, **overrides)


@pytest.fixture
def sink(tmp_path: Path) -> SqliteSink:
    return SqliteSink(str(tmp_path / "nested" / "annotations.db"))


def test_get_entry_missing_returns_none(sink: SqliteSink) -> None:
    assert sink.get_entry("pub_404") is None
    assert sink.already_processed("pub_404") is False


def test_upsert_then_lookup_by_id_and_identity_key(sink: SqliteSink) -> None:
    assert sink.upsert(_entry()) is True

    by_id = sink.get_entry("pub_001")
    by_key = sink.get_entry("https://example.com/a")

    assert by_id == by_key
    assert by_id.annotation == {"title": "T", "category": "news", "content": "C"}
    assert by_id.created_at == _T0
    assert sink.already_processed("pub_001") is True
    assert sink.already_processed("https://example.com/a") is True


def test_identical_upsert_is_a_no_op(sink: SqliteSink) -> None:
    sink.upsert(_entry())

    later = _entry(updated_at=_T0 + timedelta(hours=1))
    assert sink.upsert(later) is False

    entries = sink.list_entries()
    assert len(entries) == 1
    assert entries[0].updated_at == _T0


def test_upsert_overwrites_and_keeps_created_at(sink: SqliteSink) -> None:
    sink.upsert(_entry())

    changed = _entry(
        annotation={"title": "New", "category": "policy", "content": "C2"},
        created_at=_T0 + timedelta(days=1),
        updated_at=_T0 + timedelta(days=1),
    )
    assert sink.upsert(changed) is True

    entries = sink.list_entries()
    assert len(entries) == 1
    assert entries[0].annotation["title"] == "New"
    assert entries[0].created_at == _T0
    assert entries[0].updated_at == _T0 + timedelta(days=1)


def test_failed_entry_is_not_already_processed(sink: SqliteSink) -> None:
    sink.upsert(_entry(status="failed", annotation=None, metadata={"attempts": 3, "last_error": "bad"}))

    assert sink.already_processed("pub_001") is False
    assert sink.get_entry("pub_001").status == "failed"


def test_concurrent_upserts_for_different_ids(sink: SqliteSink) -> None:
    errors: list[Exception] = []

    def _write(i: int) -> None:
        try:
            sink.upsert(_entry(entry_id=f"pub_{i:03d}", key=f"https://example.com/{i}"))
        except Exception as exc:  # collected for the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=_write, args=(i,)) for i in range(1, 21)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert [e.entry_id for e in sink.list_entries()] == [f"pub_{i:03d}" for i in range(1, 21)]


def test_entry_without_id_is_rejected(sink: SqliteSink) -> None:
    with pytest.raises(PersistenceError):
        sink.upsert(_entry(entry_id=""))


def test_sqlite_errors_surface_as_persistence_error(sink: SqliteSink, monkeypatch: pytest.MonkeyPatch) -> None:
    def _broken(self: SqliteSink) -> sqlite3.Connection:
        raise sqlite3.OperationalError("unable to open database file")

    monkeypatch.setattr(SqliteSink, "_connect", _broken)

    with pytest.raises(PersistenceError, match="unable to open"):
        sink.upsert(_entry())
    with pytest.raises(PersistenceError):
        sink.already_processed("pub_001")


def test_invalid_table_name_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        SqliteSink(str(tmp_path / "x.db"), table="bad; DROP TABLE")
