"""Schema-declared field types used to pick comparison strategies."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from docgraph.extraction.schema_hierarchy import resolve_type


class FieldType(str, Enum):
    """Comparison type of a field, resolved from the schema."""

    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "date-time"

    @property
    def is_date(self) -> bool:
        return self in (FieldType.DATE, FieldType.DATETIME)

    @property
    def is_numeric(self) -> bool:
        return self in (FieldType.NUMBER, FieldType.INTEGER)


def find_field_definition(field_name: str, schema: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Depth-first lookup of a property definition anywhere in the schema.

    Nested objects and array items are searched; the first definition found wins.
    """
    if not isinstance(schema, dict):
        return None

    node = schema
    if resolve_type(node) == "array":
        node = node.get("items") or {}

    properties = node.get("properties") or {}
    if field_name in properties and isinstance(properties[field_name], dict):
        return properties[field_name]

    for prop in properties.values():
        if not isinstance(prop, dict):
            continue
        if resolve_type(prop) in ("object", "array"):
            found = find_field_definition(field_name, prop)
            if found is not None:
                return found
    return None


def resolve_field_type(field_name: str, schema: Optional[Dict[str, Any]]) -> FieldType:
    """Resolve the comparison type of ``field_name``.

    Priority: ``format`` (date, date-time), then ``type``; anything else is a string.
    The native ``date`` column is always a date.
    """
    if field_name == "date":
        return FieldType.DATE

    definition = find_field_definition(field_name, schema)
    if definition is None:
        return FieldType.STRING

    fmt = definition.get("format")
    if fmt == "date":
        return FieldType.DATE
    if fmt == "date-time":
        return FieldType.DATETIME

    prop_type = resolve_type(definition)
    try:
        return FieldType(prop_type)
    except ValueError:
        return FieldType.STRING
