from __future__ import annotations

import json

import pytest

from annotation_schema import DEFAULT_SCHEMA
from errors import ParseError, ValidationError
from output_parser import STAGE_DIRECT, STAGE_FENCED, parse_annotation

_GOOD = {
    "title": "Grid operator publishes outage plan",
    "category": "news",
    "content": "The operator announced maintenance windows.",
    "is_primary_source": True,
    "entities": [{"name": "TenneT", "role": "operator"}],
}


def test_direct_json_is_parsed() -> None:
    outcome = parse_annotation(json.dumps(_GOOD), DEFAULT_SCHEMA)

    assert outcome.ok
    assert outcome.stage == STAGE_DIRECT
    assert outcome.value == _GOOD


def test_fenced_json_is_parsed_when_direct_parse_fails() -> None:
    text = f"Here you go:\n```json\n{json.dumps(_GOOD)}\n```\nThanks!"

    outcome = parse_annotation(text, DEFAULT_SCHEMA)

    assert outcome.ok
    assert outcome.stage == STAGE_FENCED
    assert outcome.value["title"] == _GOOD["title"]


def test_bare_fence_without_language_tag() -> None:
    text = f"```\n{json.dumps(_GOOD)}\n```"
    assert parse_annotation(text, DEFAULT_SCHEMA).ok


def test_unknown_fields_are_dropped() -> None:
    data = dict(_GOOD, confidence=0.9, notes="extra")

    outcome = parse_annotation(json.dumps(data), DEFAULT_SCHEMA)

    assert outcome.ok
    assert "confidence" not in outcome.value
    assert "notes" not in outcome.value


def test_optional_fields_are_filled_when_missing() -> None:
    data = {"title": "t", "category": "other", "content": "c"}

    outcome = parse_annotation(json.dumps(data), DEFAULT_SCHEMA)

    assert outcome.ok
    assert outcome.value["is_primary_source"] is None
    assert outcome.value["entities"] == []


def test_nested_optional_field_filled_in_list_items() -> None:
    data = dict(_GOOD, entities=[{"name": "ACER"}])

    outcome = parse_annotation(json.dumps(data), DEFAULT_SCHEMA)

    assert outcome.value["entities"] == [{"name": "ACER", "role": None}]


# ---------------------------------------------------------------------------
# Failures: every malformed input yields exactly one typed error
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("text", [
    "",
    "   ",
    "not json at all",
    "{\"title\": ",
    "```json\n{broken\n```",
    "[1, 2, 3]",
    "\"just a string\"",
    "```json\n[1]\n```",
    None,
])
def test_unparseable_inputs_yield_parse_error(text: str | None) -> None:
    outcome = parse_annotation(text, DEFAULT_SCHEMA)

    assert not outcome.ok
    assert outcome.value is None
    assert isinstance(outcome.error, ParseError)


def test_multiple_fenced_blocks_are_ambiguous() -> None:
    block = json.dumps(_GOOD)
    text = f"```json\n{block}\n```\nor\n```json\n{block}\n```"

    outcome = parse_annotation(text, DEFAULT_SCHEMA)

    assert isinstance(outcome.error, ParseError)
    assert "2 fenced blocks" in str(outcome.error)


@pytest.mark.parametrize("mutation, path", [
    ({"title": None}, "title"),
    ({"title": 42}, "title"),
    ({"category": "gossip"}, "category"),
    ({"category": 3}, "category"),
    ({"is_primary_source": "yes"}, "is_primary_source"),
    ({"is_primary_source": 1}, "is_primary_source"),
    ({"entities": "TenneT"}, "entities"),
    ({"entities": ["TenneT"]}, "entities[0]"),
    ({"entities": [{"name": "ok"}, {"role": "no name"}]}, "entities[1].name"),
])
def test_schema_violations_yield_validation_error(mutation: dict, path: str) -> None:
    data = dict(_GOOD, **mutation)

    outcome = parse_annotation(json.dumps(data), DEFAULT_SCHEMA)

    assert not outcome.ok
    assert outcome.value is None
    assert isinstance(outcome.error, ValidationError)
    assert not isinstance(outcome.error, ParseError)
    assert outcome.error.path == path


def test_missing_required_field_reported() -> None:
    data = {k: v for k, v in _GOOD.items() if k != "content"}

    outcome = parse_annotation(json.dumps(data), DEFAULT_SCHEMA)

    assert outcome.error.path == "content"
    assert "required" in str(outcome.error)


def test_error_carries_truncated_raw_text() -> None:
    text = "garbage " * 100

    outcome = parse_annotation(text, DEFAULT_SCHEMA)

    assert outcome.error.raw_text.startswith("garbage")
    assert len(outcome.error.raw_text) <= 200


def test_deeply_nested_input_does_not_crash() -> None:
    text = "[" * 100_000 + "]" * 100_000
    outcome = parse_annotation(text, DEFAULT_SCHEMA)
    assert isinstance(outcome.error, ParseError)
