"""Decompose a nested JSON-schema-like definition into object-type nodes."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from loguru import logger

from docgraph.extraction.models import ObjectTypeNode
from docgraph.utils.text import key_to_title

_COMPLEX_TYPES = ("object", "array")


def resolve_type(definition: Dict[str, Any]) -> Optional[str]:
    """Return the effective ``type`` of a schema definition.

    Union types (``["string", "null"]``) resolve to their first non-null member.
    """
    raw = definition.get("type") if isinstance(definition, dict) else None
    if isinstance(raw, list):
        for member in raw:
            if member != "null":
                return member
        return "null"
    return raw


def is_object_property(definition: Dict[str, Any]) -> bool:
    """True for objects and for arrays whose items are objects."""
    prop_type = resolve_type(definition)
    if prop_type == "object":
        return True
    if prop_type == "array":
        items = definition.get("items") or {}
        return resolve_type(items) == "object"
    return False


class SchemaHierarchyExtractor:
    """Walks a schema depth-first and returns one node per object type, root first."""

    def extract(
        self, schema: Dict[str, Any], schema_name: Optional[str] = None
    ) -> List[ObjectTypeNode]:
        if not isinstance(schema, dict) or resolve_type(schema) != "object":
            logger.debug("Schema root is not an object; no object types extracted")
            return []

        root_name = schema.get("title") or schema_name or "Root"
        nodes: List[ObjectTypeNode] = []
        self._walk(
            definition=schema,
            name=root_name,
            path="",
            level=0,
            parent_type=None,
            is_array=False,
            nodes=nodes,
        )
        logger.debug("Extracted object types", count=len(nodes), root=root_name)
        return nodes

    def _walk(
        self,
        *,
        definition: Dict[str, Any],
        name: str,
        path: str,
        level: int,
        parent_type: Optional[str],
        is_array: bool,
        nodes: List[ObjectTypeNode],
    ) -> None:
        properties = definition.get("properties") or {}
        node = ObjectTypeNode(
            name=name,
            path=path,
            level=level,
            parent_type=parent_type,
            is_array=is_array,
            simple_fields=self._simple_fields(properties),
        )
        nodes.append(node)

        for key, prop in properties.items():
            if not isinstance(prop, dict) or not is_object_property(prop):
                continue

            child_is_array = resolve_type(prop) == "array"
            child_definition = prop.get("items") if child_is_array else prop
            child_name = (
                child_definition.get("title") or prop.get("title") or key_to_title(key)
            )
            self._walk(
                definition=child_definition,
                name=child_name,
                path=f"{path}.{key}" if path else key,
                level=level + 1,
                parent_type=name,
                is_array=child_is_array,
                nodes=nodes,
            )

    def _simple_fields(self, properties: Dict[str, Any]) -> Dict[str, Dict[str, str]]:
        fields: Dict[str, Dict[str, str]] = {}
        for key, prop in properties.items():
            if not isinstance(prop, dict):
                prop = {}
            if is_object_property(prop):
                continue
            fields[key] = {
                "title": prop.get("title") or key_to_title(key),
                "description": prop.get("description") or "",
            }
        return fields
