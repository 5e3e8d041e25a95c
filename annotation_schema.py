"""Declarative description of the structured output expected from annotation."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger(__name__)


class FieldType(str, Enum):
    STRING = "string"
    BOOL = "bool"
    ENUM = "enum"
    LIST = "list"


@dataclass(frozen=True, slots=True)
class FieldSpec:
    """One named field of an annotation.

    ``choices`` applies to ENUM fields, ``item_fields`` to LIST fields
    (each list item is an object validated against those fields).
    """

    name: str
    type: FieldType
    required: bool = True
    choices: tuple[str, ...] = ()
    item_fields: tuple[FieldSpec, ...] = ()
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Field name must be non-empty")
        if self.type is FieldType.ENUM and not self.choices:
            raise ValueError(f"Enum field '{self.name}' needs at least one choice")
        if self.type is FieldType.LIST and not self.item_fields:
            raise ValueError(f"List field '{self.name}' needs item_fields")


@dataclass(frozen=True, slots=True)
class AnnotationSchema:
    """Ordered set of fields; field order is preserved in prompts and output."""

    name: str
    fields: tuple[FieldSpec, ...]

    def __post_init__(self) -> None:
        _check_unique_names(self.fields, self.name)

    @property
    def required_names(self) -> list[str]:
        return [f.name for f in self.fields if f.required]

    def skeleton(self) -> dict[str, Any]:
        """Example JSON shape used to show the model what to return."""
        return _skeleton_for(self.fields)

    def skeleton_json(self) -> str:
        return json.dumps(self.skeleton(), indent=2)


def _check_unique_names(fields: tuple[FieldSpec, ...], owner: str) -> None:
    seen: set[str] = set()
    for spec in fields:
        if spec.name in seen:
            raise ValueError(f"Duplicate field '{spec.name}' in schema '{owner}'")
        seen.add(spec.name)
        if spec.item_fields:
            _check_unique_names(spec.item_fields, f"{owner}.{spec.name}")


def _skeleton_for(fields: tuple[FieldSpec, ...]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for spec in fields:
        if spec.type is FieldType.STRING:
            out[spec.name] = spec.description or ""
        elif spec.type is FieldType.BOOL:
            out[spec.name] = "<true|false>"
        elif spec.type is FieldType.ENUM:
            out[spec.name] = "|".join(spec.choices)
        else:
            out[spec.name] = [_skeleton_for(spec.item_fields)]
    return out


def schema_from_dict(data: dict[str, Any]) -> AnnotationSchema:
    """Build a schema from its JSON form.

    Expected shape::

        {"name": "publication", "fields": [
            {"name": "title", "type": "string"},
            {"name": "category", "type": "enum", "choices": ["a", "b"]},
            {"name": "entities", "type": "list", "required": false,
             "items": [{"name": "name", "type": "string"}]}
        ]}
    """
    if not isinstance(data, dict):
        raise ValueError("Schema document must be a JSON object")
    name = data.get("name")
    raw_fields = data.get("fields")
    if not isinstance(name, str) or not name.strip():
        raise ValueError("Schema document needs a non-empty 'name'")
    if not isinstance(raw_fields, list) or not raw_fields:
        raise ValueError("Schema document needs a non-empty 'fields' list")
    return AnnotationSchema(name=name.strip(), fields=_fields_from_list(raw_fields))


def _fields_from_list(raw_fields: list[Any]) -> tuple[FieldSpec, ...]:
    specs: list[FieldSpec] = []
    for raw in raw_fields:
        if not isinstance(raw, dict):
            raise ValueError(f"Field definition must be an object, got {raw!r}")
        try:
            field_type = FieldType(raw.get("type"))
        except ValueError as exc:
            raise ValueError(f"Unknown field type {raw.get('type')!r} for field {raw.get('name')!r}") from exc
        items = raw.get("items") or []
        specs.append(
            FieldSpec(
                name=str(raw.get("name") or ""),
                type=field_type,
                required=bool(raw.get("required", True)),
                choices=tuple(str(c) for c in raw.get("choices") or ()),
                item_fields=_fields_from_list(items) if items else (),
                description=str(raw.get("description") or ""),
            )
        )
    return tuple(specs)


def load_schema(path: str | Path) -> AnnotationSchema:
    """Read a schema JSON file."""
    schema_path = Path(path)
    with schema_path.open(encoding="utf-8") as fh:
        data = json.load(fh)
    schema = schema_from_dict(data)
    LOGGER.info("Loaded annotation schema '%s' (%s fields) from %s", schema.name, len(schema.fields), schema_path)
    return schema


DEFAULT_SCHEMA = AnnotationSchema(
    name="publication",
    fields=(
        FieldSpec("title", FieldType.STRING, description="<short descriptive title>"),
        FieldSpec(
            "category",
            FieldType.ENUM,
            choices=("research", "news", "product", "policy", "other"),
        ),
        FieldSpec("content", FieldType.STRING, description="<2-4 sentence summary of the content>"),
        FieldSpec("is_primary_source", FieldType.BOOL, required=False),
        FieldSpec(
            "entities",
            FieldType.LIST,
            required=False,
            item_fields=(
                FieldSpec("name", FieldType.STRING),
                FieldSpec("role", FieldType.STRING, required=False),
            ),
        ),
    ),
)
