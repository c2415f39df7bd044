"""Reading and writing resolved objects and their attributes."""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Optional, Tuple

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from docgraph.extraction.field_types import FieldType, resolve_field_type
from docgraph.storage.models import ObjectAttribute, ObjectRelationship, ResolvedObject
from docgraph.utils.dates import format_display_date, normalize_date, parse_date

NATIVE_COLUMNS = ("name", "date", "description", "url")


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def to_text(value: Any) -> Optional[str]:
    """Textual representation stored in ``text_value`` (searched with LIKE)."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def candidate_data(obj: ResolvedObject) -> Dict[str, Any]:
    """Native columns and attributes of ``obj`` as one flat dict."""
    data: Dict[str, Any] = {}
    if obj.name:
        data["name"] = obj.name
    if obj.date:
        data["date"] = obj.date.isoformat()
    if obj.description:
        data["description"] = obj.description
    if obj.url:
        data["url"] = obj.url
    for attribute in obj.attributes:
        data[attribute.name] = attribute.get_value()
    return data


def object_snapshot(obj: ResolvedObject) -> Dict[str, Any]:
    """Current state of ``obj`` including id and type, for prompts and provenance."""
    return {"id": obj.id, "type": obj.type, **candidate_data(obj)}


def format_value_as_name(value: Any, field_type: FieldType) -> str:
    """Human-readable rendering of an identity value used as an object name."""
    if isinstance(value, bool) or field_type == FieldType.BOOLEAN:
        truthy = value if isinstance(value, bool) else str(value).strip().lower() in ("true", "1", "yes")
        return "Yes" if truthy else "No"
    if field_type.is_date:
        parsed = parse_date(value)
        if parsed:
            return format_display_date(parsed)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not value.is_integer():
            return f"{value:,.2f}"
        return f"{int(value):,}"
    return str(value).strip()


def resolve_object_name(
    data: Dict[str, Any], identity_fields: Iterable[str], schema: Optional[Dict[str, Any]] = None
) -> Optional[str]:
    """Prefer ``name``; else the first non-blank identity field, formatted."""
    if not is_blank(data.get("name")):
        return str(data["name"]).strip()
    for field in identity_fields:
        value = data.get(field)
        if not is_blank(value):
            return format_value_as_name(value, resolve_field_type(field, schema))
    return None


class ObjectWriter:
    """Creates and updates resolved objects inside one session."""

    def __init__(self, session: Session, *, team_id: int = 1, schema: Optional[Dict[str, Any]] = None):
        self.session = session
        self.team_id = team_id
        self.schema = schema or {}

    def create(
        self,
        object_type: str,
        data: Dict[str, Any],
        *,
        root_object_id: Optional[int] = None,
        schema_definition_id: Optional[int] = None,
    ) -> ResolvedObject:
        obj = ResolvedObject(
            team_id=self.team_id,
            type=object_type,
            root_object_id=root_object_id,
            schema_definition_id=schema_definition_id,
        )
        self.session.add(obj)
        self.save_fields(obj, data)
        self.session.flush()
        logger.debug("Created {object_type} object {object_id}", object_type=object_type, object_id=obj.id)
        return obj

    def save_fields(self, obj: ResolvedObject, data: Dict[str, Any]) -> ResolvedObject:
        """Write non-blank values onto native columns or attributes.

        Values of date-typed fields are stored as ``YYYY-MM-DD``; other values are
        stored as given.
        """
        existing = {attribute.name: attribute for attribute in obj.attributes}
        for field, value in data.items():
            if field in ("id", "type") or field.startswith("_") or is_blank(value):
                continue

            field_type = resolve_field_type(field, self.schema)
            if field_type.is_date and not isinstance(value, (list, dict)):
                value = normalize_date(value) or value

            if field in NATIVE_COLUMNS:
                self._set_native(obj, field, value)
                continue

            attribute = existing.get(field)
            if attribute is None:
                attribute = ObjectAttribute(name=field)
                obj.attributes.append(attribute)
                existing[field] = attribute
            attribute.text_value = to_text(value)
            attribute.json_value = value
        self.session.flush()
        return obj

    def ensure_relationship(self, parent_id: int, child_id: int, relationship_name: str) -> ObjectRelationship:
        stmt = select(ObjectRelationship).where(
            ObjectRelationship.object_id == parent_id,
            ObjectRelationship.related_object_id == child_id,
            ObjectRelationship.relationship_name == relationship_name,
        )
        relationship = self.session.scalars(stmt).first()
        if relationship is None:
            relationship = ObjectRelationship(
                object_id=parent_id,
                related_object_id=child_id,
                relationship_name=relationship_name,
            )
            self.session.add(relationship)
            self.session.flush()
        return relationship

    def parent_of(self, child_id: int) -> Tuple[Optional[ResolvedObject], Optional[str]]:
        """Parent object of ``child_id`` and the relationship name linking them."""
        stmt = (
            select(ObjectRelationship)
            .where(ObjectRelationship.related_object_id == child_id)
            .order_by(ObjectRelationship.id)
        )
        relationship = self.session.scalars(stmt).first()
        if relationship is None:
            return None, None
        return self.session.get(ResolvedObject, relationship.object_id), relationship.relationship_name

    def _set_native(self, obj: ResolvedObject, field: str, value: Any) -> None:
        if field == "date":
            parsed = parse_date(value)
            if parsed is None:
                logger.warning("Ignoring unparseable date {value}", value=value)
                return
            obj.date = parsed
        elif field == "name":
            obj.name = str(value)[:255]
        else:
            setattr(obj, field, str(value))
