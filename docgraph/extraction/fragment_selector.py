"""Fragment selectors: nested ``{type, children}`` trees naming the fields a group covers.

A selector mirrors the schema path from the root object down to the object type
being extracted. Intermediate keys are nesting keys; the leaf holds scalar fields.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from docgraph.extraction.schema_hierarchy import resolve_type
from docgraph.utils.text import key_to_title, snake_case

_NESTED_TYPES = ("object", "array")


def _is_nested(node: Dict[str, Any]) -> bool:
    node_type = node.get("type") if isinstance(node, dict) else None
    return node_type is None or node_type in _NESTED_TYPES


def _first_child(children: Dict[str, Any]) -> tuple[str, Dict[str, Any]]:
    key = next(iter(children))
    child = children[key]
    return key, child if isinstance(child, dict) else {}


class FragmentPathResolver:
    """Reads nesting structure out of fragment selectors."""

    def get_nesting_keys(self, selector: Dict[str, Any]) -> List[str]:
        """Keys of the nested object/array chain, stopping at scalar leaves."""
        keys: List[str] = []
        children = (selector or {}).get("children") or {}

        while children:
            key, child = _first_child(children)
            child_type = child.get("type")
            if child_type is not None and child_type not in _NESTED_TYPES:
                break

            keys.append(key)

            grandchildren = child.get("children") or {}
            if not grandchildren:
                break
            if self.has_only_scalar_children(grandchildren):
                break

            children = grandchildren

        return keys

    def get_parent_type(self, selector: Dict[str, Any]) -> Optional[str]:
        """Second-to-last nesting key, title-cased; None for fewer than two keys."""
        keys = self.get_nesting_keys(selector)
        if len(keys) < 2:
            return None
        return key_to_title(keys[-2])

    def has_only_scalar_children(self, children: Dict[str, Any]) -> bool:
        return all(not _is_nested(child) for child in children.values())

    def get_leaf_key(self, selector: Dict[str, Any], fallback_object_type: str = "") -> str:
        """Key of the leaf object; flat selectors fall back to the snake-cased type."""
        keys = self.get_nesting_keys(selector)
        if not keys:
            return snake_case(fallback_object_type)
        return keys[-1]

    def get_leaf_node(self, selector: Dict[str, Any]) -> Dict[str, Any]:
        """The selector node holding the leaf's scalar children."""
        node = selector or {}
        for key in self.get_nesting_keys(selector):
            node = (node.get("children") or {}).get(key) or {}
        return node

    def is_leaf_array_type(self, selector: Dict[str, Any]) -> bool:
        """True when the leaf object is declared as an array of objects."""
        if not self.get_nesting_keys(selector):
            return False
        return self.get_leaf_node(selector).get("type", "array") == "array"

    def get_leaf_fields(self, selector: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        """Scalar field definitions directly under the leaf."""
        children = self.get_leaf_node(selector).get("children") or {}
        return {key: child for key, child in children.items() if not _is_nested(child)}

    def get_expected_fields(self, selector: Dict[str, Any]) -> List[str]:
        """All scalar field keys anywhere in the selector, depth-first."""
        fields: List[str] = []
        for key, child in ((selector or {}).get("children") or {}).items():
            if _is_nested(child):
                fields.extend(self.get_expected_fields(child))
            else:
                fields.append(key)
        return fields

    def unwrap_data(self, data: Any, selector: Dict[str, Any], *, preserve_leaf_array: bool = False) -> Any:
        """Strip nesting keys from a response shaped like the full selector path.

        Intermediate arrays contribute their first element. Data that is not wrapped
        (already leaf-shaped) is returned unchanged.
        """
        keys = self.get_nesting_keys(selector)
        current = data
        for index, key in enumerate(keys):
            if not isinstance(current, dict) or key not in current:
                return current
            current = current[key]
            at_leaf = index == len(keys) - 1
            if isinstance(current, list) and current and (not at_leaf or not preserve_leaf_array):
                current = current[0]
        return current

    def build_selector(
        self,
        path: str,
        fields: Iterable[str],
        schema: Dict[str, Any],
        *,
        leaf_is_array: bool,
    ) -> Dict[str, Any]:
        """Build a selector for ``fields`` of the object type found at ``path``.

        Every leaf field is typed ``string``; intermediate node types follow the schema.
        """
        leaf_children = {field: {"type": "string"} for field in fields}
        parts = [p for p in (path or "").split(".") if p]
        if not parts:
            return {"type": "object", "children": leaf_children}

        path_types = self._path_types(parts, schema)
        node: Dict[str, Any] = {
            "type": "array" if leaf_is_array else "object",
            "children": leaf_children,
        }
        for index in range(len(parts) - 1, 0, -1):
            node = {
                "type": path_types.get(parts[index - 1], "object"),
                "children": {parts[index]: node},
            }
        return {"type": "object", "children": {parts[0]: node}}

    def _path_types(self, parts: List[str], schema: Dict[str, Any]) -> Dict[str, str]:
        types: Dict[str, str] = {}
        current: Dict[str, Any] = schema or {}
        for part in parts:
            if resolve_type(current) == "array":
                current = current.get("items") or {}
            prop = (current.get("properties") or {}).get(part) or {}
            types[part] = resolve_type(prop) or "object"
            current = prop
        return types
