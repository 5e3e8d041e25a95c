"""Acquisition sources feeding raw items into the pipeline.

A source is any re-iterable of ``AcquiredItem``: iterating it again starts
over from the beginning, which is what lets a run be repeated over the
same input.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from json import JSONDecodeError
from pathlib import Path
from typing import Any

import requests

from identity import normalize_identity_key
from models import Record

REQUEST_TIMEOUT_SECONDS = 20

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AcquiredItem:
    identity_key: str
    raw_payload: str
    source_locator: str
    record_id: str = ""


class JsonlSource:
    """One JSON object per line, e.g. ``{"url": ..., "text": ...}``.

    Malformed lines and lines without a key or text are logged and skipped.
    An ``id`` field, when present, is kept as the record id.
    """

    def __init__(self, path: str | Path, key_field: str = "url", text_field: str = "text") -> None:
        self.path = Path(path)
        self.key_field = key_field
        self.text_field = text_field

    def __iter__(self) -> Iterator[AcquiredItem]:
        with self.path.open(encoding="utf-8") as fh:
            for line_no, line in enumerate(fh, start=1):
                if not line.strip():
                    continue
                try:
                    obj = json.loads(line)
                except JSONDecodeError as exc:
                    LOGGER.warning("JSONL source: skipping malformed line %s in %s: %s", line_no, self.path, exc)
                    continue
                item = self._to_item(obj, line_no)
                if item is not None:
                    yield item

    def _to_item(self, obj: Any, line_no: int) -> AcquiredItem | None:
        if not isinstance(obj, dict):
            LOGGER.warning("JSONL source: line %s is not an object, skipping", line_no)
            return None
        key = _as_str(obj.get(self.key_field))
        text = _as_str(obj.get(self.text_field))
        if not key or not text:
            LOGGER.warning(
                "JSONL source: line %s lacks '%s' or '%s', skipping",
                line_no,
                self.key_field,
                self.text_field,
            )
            return None
        return AcquiredItem(
            identity_key=key,
            raw_payload=text,
            source_locator=f"{self.path}:{line_no}",
            record_id=_as_str(obj.get("id")) or "",
        )


class UrlFetchSource:
    """Fetch each URL with a plain GET; failed fetches are logged and skipped."""

    def __init__(self, urls: Iterable[str], timeout: float = REQUEST_TIMEOUT_SECONDS) -> None:
        self.urls = [u for u in (_as_str(url) for url in urls) if u]
        self.timeout = timeout

    def __iter__(self) -> Iterator[AcquiredItem]:
        for url in self.urls:
            try:
                response = requests.get(url, timeout=self.timeout)
                response.raise_for_status()
            except requests.RequestException as exc:
                LOGGER.warning("URL fetch: failed for %s, skipping: %s", url, exc)
                continue

            text = response.text
            if not text.strip():
                LOGGER.warning("URL fetch: empty body for %s, skipping", url)
                continue
            LOGGER.info("URL fetch: %s bytes=%s", url, len(response.content))
            yield AcquiredItem(identity_key=url, raw_payload=text, source_locator=response.url or url)


def records_from_source(source: Iterable[AcquiredItem]) -> list[Record]:
    """Materialize NEW records with canonical identity keys."""
    records: list[Record] = []
    for item in source:
        key = normalize_identity_key(item.identity_key)
        if not key:
            LOGGER.warning("Acquisition: dropping item from %s with empty identity key", item.source_locator)
            continue
        records.append(
            Record(
                identity_key=key,
                raw_payload=item.raw_payload,
                source_locator=item.source_locator,
                record_id=item.record_id,
            )
        )
    return records


def _as_str(value: Any) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None
