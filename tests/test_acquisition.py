from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests

from acquisition import AcquiredItem, JsonlSource, UrlFetchSource, records_from_source
from models import RecordStatus


def _write_jsonl(path: Path, lines: list[object]) -> Path:
    path.write_text(
        "\n".join(line if isinstance(line, str) else json.dumps(line) for line in lines) + "\n",
        encoding="utf-8",
    )
    return path


def test_jsonl_source_yields_items_with_locators(tmp_path: Path) -> None:
    path = _write_jsonl(tmp_path / "in.jsonl", [
        {"url": "https://example.com/a", "text": "alpha"},
        {"url": "https://example.com/b", "text": "beta", "id": "custom_7"},
    ])

    items = list(JsonlSource(path))

    assert items == [
        AcquiredItem("https://example.com/a", "alpha", f"{path}:1"),
        AcquiredItem("https://example.com/b", "beta", f"{path}:2", record_id="custom_7"),
    ]


def test_jsonl_source_skips_bad_lines(tmp_path: Path) -> None:
    path = _write_jsonl(tmp_path / "in.jsonl", [
        "{not json",
        "",
        ["a", "list"],
        {"url": "https://example.com/a"},
        {"url": "   ", "text": "no key"},
        {"url": "https://example.com/ok", "text": "fine"},
    ])

    items = list(JsonlSource(path))

    assert [i.identity_key for i in items] == ["https://example.com/ok"]
    assert items[0].source_locator.endswith(":6")


def test_jsonl_source_custom_fields_and_reiteration(tmp_path: Path) -> None:
    path = _write_jsonl(tmp_path / "in.jsonl", [{"doi": "10.1/abc", "body": "text"}])
    source = JsonlSource(path, key_field="doi", text_field="body")

    assert list(source) == list(source)
    assert list(source)[0].identity_key == "10.1/abc"


def test_url_fetch_source_skips_failures() -> None:
    ok = MagicMock()
    ok.text = "<html>hello</html>"
    ok.content = b"<html>hello</html>"
    ok.url = "https://example.com/final"

    empty = MagicMock()
    empty.text = "   "

    def _get(url: str, timeout: float) -> MagicMock:
        if "down" in url:
            raise requests.ConnectionError("refused")
        return empty if "empty" in url else ok

    with patch("acquisition.requests.get", side_effect=_get) as mock_get:
        items = list(UrlFetchSource(["https://down.example.com", "https://example.com/ok", "https://example.com/empty", " "]))

    assert items == [AcquiredItem("https://example.com/ok", "<html>hello</html>", "https://example.com/final")]
    assert mock_get.call_count == 3


def test_records_from_source_normalizes_keys() -> None:
    records = records_from_source([
        AcquiredItem("HTTPS://Example.com/a/?utm_source=x#top", "alpha", "src:1"),
        AcquiredItem("   ", "dropped", "src:2"),
        AcquiredItem("Some-Title", "beta", "src:3", record_id="pub_050"),
    ])

    assert [r.identity_key for r in records] == ["https://example.com/a", "some-title"]
    assert records[1].record_id == "pub_050"
    assert all(r.status is RecordStatus.NEW for r in records)
