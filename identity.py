"""Stable identifiers and identity-key deduplication."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from models import PersistedEntry, Record

LOGGER = logging.getLogger(__name__)

DUPLICATE_REASON = "duplicate"
ID_CONFLICT_REASON = "id_conflict"

_DEFAULT_PORTS = {"http": 80, "https": 443}
_TRACKING_PARAMS: frozenset[str] = frozenset({"fbclid", "gclid", "mc_cid", "mc_eid"})

EntryLookup = Callable[[str], PersistedEntry | None]


class IdCounter:
    """Run-scoped sequential id source (``pub_001``, ``pub_002``, ...).

    Owned by the coordinator and passed to whoever assigns ids. Reserved
    ids are never issued.
    """

    def __init__(self, prefix: str = "pub", width: int = 3, start: int = 0) -> None:
        if width < 1:
            raise ValueError("width must be >= 1")
        self.prefix = prefix
        self.width = width
        self._value = start
        self._reserved: set[str] = set()
        self._lock = threading.Lock()

    def reserve(self, ids: Iterable[str]) -> None:
        with self._lock:
            self._reserved.update(i for i in ids if i)

    def next_id(self) -> str:
        with self._lock:
            while True:
                self._value += 1
                candidate = f"{self.prefix}_{self._value:0{self.width}d}"
                if candidate not in self._reserved:
                    self._reserved.add(candidate)
                    return candidate

    @property
    def issued(self) -> int:
        """Highest sequence number consumed so far, skipped ones included."""
        with self._lock:
            return self._value


def normalize_identity_key(raw: str) -> str:
    """Canonicalize a natural identifier into a dedup key.

    URLs lose their fragment, default port, trailing slash and tracking
    parameters, and get a lowercase scheme/host and sorted query. Anything
    else is stripped and case-folded.
    """
    value = (raw or "").strip()
    if not value:
        return ""

    parts = urlsplit(value)
    if parts.scheme.lower() not in _DEFAULT_PORTS or not parts.netloc:
        return value.casefold()

    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    try:
        port = parts.port
    except ValueError:
        return value.casefold()
    netloc = host if port is None or port == _DEFAULT_PORTS[scheme] else f"{host}:{port}"

    path = parts.path or "/"
    if len(path) > 1:
        path = path.rstrip("/")

    query_pairs = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if not k.lower().startswith("utm_") and k.lower() not in _TRACKING_PARAMS
    ]
    query = urlencode(sorted(query_pairs))

    return urlunsplit((scheme, netloc, path, query, ""))


@dataclass(slots=True)
class DedupResult:
    """Surviving, duplicate and id-conflicting records, each in encounter order."""

    kept: list[Record] = field(default_factory=list)
    duplicates: list[Record] = field(default_factory=list)
    conflicts: list[Record] = field(default_factory=list)


def deduplicate(
    records: Iterable[Record],
    counter: IdCounter,
    lookup: EntryLookup | None = None,
) -> DedupResult:
    """Drop records whose identity key was already seen in this run.

    Conflict policy: the first occurrence wins. When two records share an
    identity key but carry different payloads, the earlier record is kept
    with all of its original field values and the later one is marked
    SKIPPED (reason ``duplicate``); fields are never merged.

    Ids are settled before any new one is issued:

    * ids that arrive with the input are kept and reserved in ``counter``;
      an input id already owned by a different identity key (earlier in
      this input, or in the store reached through ``lookup``) marks the
      record SKIPPED with reason ``id_conflict``.
    * a record without an id reuses the id its identity key was persisted
      under, so re-runs overwrite their own rows.
    * everything else gets the next id from ``counter`` that the store does
      not hold yet, in encounter order.

    Only surviving records consume ids, so running this again on its own
    output changes nothing.
    """
    result = DedupResult()
    seen: dict[str, Record] = {}
    owners: dict[str, str] = {}

    for record in records:
        key = record.identity_key
        if key in seen:
            record.mark_skipped(DUPLICATE_REASON)
            result.duplicates.append(record)
            LOGGER.info(
                "Dedup: dropping duplicate identity_key=%s (first seen at %s)",
                key,
                seen[key].source_locator,
            )
            continue
        seen[key] = record

        if record.record_id:
            owner = owners.get(record.record_id) or _persisted_owner(lookup, record.record_id)
            if owner is not None and owner != key:
                record.last_error = f"id {record.record_id} already belongs to {owner}"
                record.mark_skipped(ID_CONFLICT_REASON)
                result.conflicts.append(record)
                LOGGER.error("Dedup: skipping identity_key=%s: %s", key, record.last_error)
                continue
            owners[record.record_id] = key
        result.kept.append(record)

    counter.reserve(owners)
    for record in result.kept:
        if record.record_id:
            continue
        persisted = _persisted_id(lookup, record.identity_key)
        if persisted is not None and persisted not in owners:
            counter.reserve([persisted])
            record.record_id = persisted
        else:
            record.record_id = _next_free_id(counter, lookup)
        owners[record.record_id] = record.identity_key

    LOGGER.info(
        "Dedup: total=%s kept=%s duplicates=%s id_conflicts=%s",
        len(result.kept) + len(result.duplicates) + len(result.conflicts),
        len(result.kept),
        len(result.duplicates),
        len(result.conflicts),
    )
    return result


def _persisted_owner(lookup: EntryLookup | None, record_id: str) -> str | None:
    """Identity key stored under ``record_id``, if any."""
    entry = lookup(record_id) if lookup is not None else None
    if entry is None or entry.entry_id != record_id:
        return None
    return entry.identity_key


def _persisted_id(lookup: EntryLookup | None, identity_key: str) -> str | None:
    entry = lookup(identity_key) if lookup is not None else None
    if entry is None or entry.identity_key != identity_key:
        return None
    return entry.entry_id


def _next_free_id(counter: IdCounter, lookup: EntryLookup | None) -> str:
    while True:
        candidate = counter.next_id()
        owner = _persisted_owner(lookup, candidate)
        if owner is None:
            return candidate
        LOGGER.debug("Dedup: id=%s already stored for %s, skipping", candidate, owner)
