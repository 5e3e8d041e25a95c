"""Turn raw annotation text into a schema-checked value.

Parsing runs in two stages: the whole text as JSON, then the contents of a
single fenced block (```json ... ```). Whatever happens, callers get a
``ParseOutcome`` back; nothing in here raises on bad input.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from json import JSONDecodeError
from typing import Any

from annotation_schema import AnnotationSchema, FieldSpec, FieldType
from errors import ParseError, ValidationError

STAGE_DIRECT = "direct"
STAGE_FENCED = "fenced"

_FENCE_RE = re.compile(r"```[ \t]*(?:json|JSON)?[ \t]*\r?\n?(.*?)```", re.DOTALL)


@dataclass(frozen=True, slots=True)
class ParseOutcome:
    """Exactly one of ``value`` or ``error`` is set."""

    value: dict[str, Any] | None = None
    error: ValidationError | None = None
    stage: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_annotation(text: str | None, schema: AnnotationSchema) -> ParseOutcome:
    """Parse and validate one raw annotation response."""
    raw = text if isinstance(text, str) else ""

    parsed, stage, parse_error = _parse_json_object(raw)
    if parse_error is not None:
        return ParseOutcome(error=parse_error)

    try:
        value = _validate_object(parsed, schema.fields, raw, path="")
    except ValidationError as exc:
        return ParseOutcome(error=exc, stage=stage)
    return ParseOutcome(value=value, stage=stage)


def _parse_json_object(raw: str) -> tuple[dict[str, Any] | None, str, ParseError | None]:
    stripped = raw.strip()
    if not stripped:
        return None, "", ParseError("empty response", raw_text=raw)

    direct, ok = _try_json(stripped)
    if ok:
        if isinstance(direct, dict):
            return direct, STAGE_DIRECT, None
        return None, STAGE_DIRECT, ParseError(
            f"expected a JSON object, got {type(direct).__name__}", raw_text=raw
        )

    blocks = _FENCE_RE.findall(raw)
    if not blocks:
        return None, "", ParseError("response is not JSON and has no fenced block", raw_text=raw)
    if len(blocks) > 1:
        return None, STAGE_FENCED, ParseError(
            f"found {len(blocks)} fenced blocks, expected exactly one", raw_text=raw
        )

    fenced, ok = _try_json(blocks[0].strip())
    if not ok:
        return None, STAGE_FENCED, ParseError("fenced block is not valid JSON", raw_text=raw)
    if not isinstance(fenced, dict):
        return None, STAGE_FENCED, ParseError(
            f"expected a JSON object in fenced block, got {type(fenced).__name__}", raw_text=raw
        )
    return fenced, STAGE_FENCED, None


def _try_json(candidate: str) -> tuple[Any, bool]:
    try:
        return json.loads(candidate), True
    except (JSONDecodeError, RecursionError):
        return None, False


def _validate_object(
    data: dict[str, Any],
    fields: tuple[FieldSpec, ...],
    raw: str,
    path: str,
) -> dict[str, Any]:
    # Unknown keys are dropped; optional missing keys are filled so the
    # result always has every declared field.
    out: dict[str, Any] = {}
    for spec in fields:
        field_path = f"{path}.{spec.name}" if path else spec.name
        value = data.get(spec.name)
        if value is None:
            if spec.required:
                raise ValidationError("required field is missing", raw_text=raw, path=field_path)
            out[spec.name] = [] if spec.type is FieldType.LIST else None
            continue
        out[spec.name] = _validate_value(value, spec, raw, field_path)
    return out


def _validate_value(value: Any, spec: FieldSpec, raw: str, path: str) -> Any:
    if spec.type is FieldType.STRING:
        if not isinstance(value, str):
            raise ValidationError(f"expected string, got {type(value).__name__}", raw_text=raw, path=path)
        return value

    if spec.type is FieldType.BOOL:
        if not isinstance(value, bool):
            raise ValidationError(f"expected bool, got {type(value).__name__}", raw_text=raw, path=path)
        return value

    if spec.type is FieldType.ENUM:
        if not isinstance(value, str) or value not in spec.choices:
            raise ValidationError(
                f"expected one of {list(spec.choices)}, got {value!r}", raw_text=raw, path=path
            )
        return value

    if not isinstance(value, list):
        raise ValidationError(f"expected list, got {type(value).__name__}", raw_text=raw, path=path)
    items: list[dict[str, Any]] = []
    for index, item in enumerate(value):
        item_path = f"{path}[{index}]"
        if not isinstance(item, dict):
            raise ValidationError(
                f"expected object, got {type(item).__name__}", raw_text=raw, path=item_path
            )
        items.append(_validate_object(item, spec.item_fields, raw, item_path))
    return items
