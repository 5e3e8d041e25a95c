"""PostgREST (Supabase-style) persistence sink over plain HTTP."""

from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any

import requests

from errors import PersistenceError
from models import PersistedEntry

REST_SINK_TABLE = os.getenv("REST_SINK_TABLE", "annotated_entries")
REQUEST_TIMEOUT_SECONDS = 30

LOGGER = logging.getLogger(__name__)


class RestSink:
    """Keyed upsert against a PostgREST table.

    Upserts rely on the table's primary key (``id``) and
    ``Prefer: resolution=merge-duplicates``. A failed request raises
    ``PersistenceError`` straight away; retrying is the caller's decision.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        table: str = REST_SINK_TABLE,
        session: requests.Session | None = None,
    ) -> None:
        base_url = base_url or os.getenv("REST_SINK_URL")
        api_key = api_key or os.getenv("REST_SINK_KEY")
        if not base_url:
            raise RuntimeError("REST_SINK_URL environment variable is required")
        if not api_key:
            raise RuntimeError("REST_SINK_KEY environment variable is required")

        self.endpoint = f"{base_url.rstrip('/')}/rest/v1/{table}"
        self.session = session or requests.Session()
        self.session.headers.update({
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        })

    def get_entry(self, key: str) -> PersistedEntry | None:
        params = {
            "select": "*",
            "or": f"(id.eq.{_quote(key)},identity_key.eq.{_quote(key)})",
            "order": "updated_at.desc",
        }
        rows = self._request("GET", params=params, label=f"lookup key={key}").json()
        if not isinstance(rows, list):
            raise PersistenceError(f"Unexpected lookup response shape for key={key}: {rows!r}")
        if not rows:
            return None
        exact = [row for row in rows if row.get("id") == key]
        return _entry_from_row(exact[0] if exact else rows[0])

    def already_processed(self, key: str) -> bool:
        entry = self.get_entry(key)
        return entry is not None and entry.annotation is not None

    def upsert(self, entry: PersistedEntry) -> bool:
        """Insert or overwrite ``entry``; returns False when nothing changed."""
        if not entry.entry_id:
            raise PersistenceError("Cannot persist an entry without an id")

        existing = self.get_entry(entry.entry_id)
        if existing is not None and existing.entry_id == entry.entry_id:
            if existing.same_content(entry):
                LOGGER.debug("Upsert no-op for id=%s (content unchanged)", entry.entry_id)
                return False
            created_at = existing.created_at
        else:
            created_at = entry.created_at

        self._request(
            "POST",
            params={"on_conflict": "id"},
            json_payload=_entry_to_row(entry, created_at),
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
            label=f"upsert id={entry.entry_id}",
        )
        LOGGER.info("Persisted id=%s status=%s to %s", entry.entry_id, entry.status, self.endpoint)
        return True

    def close(self) -> None:
        self.session.close()

    def _request(
        self,
        method: str,
        *,
        params: dict[str, str] | None = None,
        json_payload: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        label: str,
    ) -> requests.Response:
        try:
            response = self.session.request(
                method=method,
                url=self.endpoint,
                params=params,
                json=json_payload,
                headers=headers,
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            detail = ""
            if isinstance(exc, requests.HTTPError) and exc.response is not None:
                detail = exc.response.text[:300]
            raise PersistenceError(f"REST sink {label} failed: {exc} {detail}".strip()) from exc
        return response


def _quote(value: str) -> str:
    # PostgREST needs reserved characters inside filter values double-quoted.
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _entry_to_row(entry: PersistedEntry, created_at: datetime) -> dict[str, Any]:
    return {
        "id": entry.entry_id,
        "identity_key": entry.identity_key,
        "source_locator": entry.source_locator,
        "status": entry.status,
        "annotation": entry.annotation,
        "metadata": entry.metadata,
        "created_at": created_at.isoformat(),
        "updated_at": entry.updated_at.isoformat(),
    }


def _entry_from_row(row: dict[str, Any]) -> PersistedEntry:
    try:
        return PersistedEntry(
            entry_id=str(row["id"]),
            identity_key=str(row["identity_key"]),
            source_locator=str(row.get("source_locator") or ""),
            status=str(row["status"]),
            annotation=row.get("annotation"),
            metadata=row.get("metadata") or {},
            created_at=_parse_datetime(row["created_at"]),
            updated_at=_parse_datetime(row["updated_at"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise PersistenceError(f"Malformed row from REST sink: {row!r}") from exc


def _parse_datetime(raw: str) -> datetime:
    return datetime.fromisoformat(raw.replace("Z", "+00:00"))
