"""Roll extraction artifacts of a run up into one nested object tree."""

from __future__ import annotations

from collections import Counter
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional, Set

from loguru import logger
from sqlalchemy.orm import Session

from docgraph.storage.models import EXTRACTION_OPERATIONS, Artifact, TaskRun
from docgraph.storage.store import live_children
from docgraph.utils.errors import ValidationError
from docgraph.utils.text import snake_case


def find_object(content: Any, object_id: Any) -> Optional[Dict[str, Any]]:
    """Depth-first search for the dict whose ``id`` equals ``object_id``."""
    if isinstance(content, dict):
        if object_id is not None and content.get("id") == object_id:
            return content
        for value in content.values():
            found = find_object(value, object_id)
            if found is not None:
                return found
    elif isinstance(content, list):
        for item in content:
            found = find_object(item, object_id)
            if found is not None:
                return found
    return None


def _is_nested_object(value: Any) -> bool:
    if isinstance(value, dict):
        return "id" in value
    if isinstance(value, list):
        return any(isinstance(item, dict) and "id" in item for item in value)
    return False


class RollupEngine:
    """Merges ``Extract Identity``/``Extract Remaining`` records into a tree.

    Records sharing an object id are merged in artifact creation order: a later
    non-null value replaces an earlier one, a null never replaces a value.
    Children hang under their parent by relationship key; whether the key holds
    an array or a single object follows the record's ``is_array_type`` flag.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def rollup(self, task_run: TaskRun, force: bool = False) -> Dict[str, Any]:
        """Write the rollup into the run's output artifact and return it.

        An output artifact that already holds content is left as it is unless
        ``force`` is set.
        """
        target = task_run.output_artifact
        if target is None:
            raise ValidationError(f"Task run {task_run.id} has no output artifact")
        if target.json_content and not force:
            logger.info("Rollup already present; skipping", task_run_id=task_run.id)
            return target.json_content

        artifacts = sorted(self.collect_artifacts(target.id), key=lambda a: a.id)
        result = self.build(artifacts)
        target.json_content = result
        self.session.flush()

        logger.info(
            "Rolled up {total} objects",
            total=result["summary"]["total_objects"],
            task_run_id=task_run.id,
            by_type=result["summary"]["by_type"],
        )
        return result

    def collect_artifacts(self, artifact_id: int) -> List[Artifact]:
        """Extraction artifacts anywhere below ``artifact_id``."""
        collected: List[Artifact] = []
        pending = [artifact_id]
        seen: Set[int] = set()
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            for child in live_children(self.session, current):
                if (child.meta or {}).get("operation") in EXTRACTION_OPERATIONS:
                    collected.append(child)
                pending.append(child.id)
        return collected

    def build(self, artifacts: List[Artifact]) -> Dict[str, Any]:
        objects: Dict[Any, Dict[str, Any]] = {}
        # child id -> (parent id, relationship key, is array)
        links: Dict[Any, tuple] = {}

        for artifact in artifacts:
            meta = artifact.meta or {}
            object_id = meta.get("object_id")
            record = find_object(artifact.json_content, object_id)
            if record is None:
                if not isinstance(artifact.json_content, dict) or object_id is None:
                    continue
                record = artifact.json_content

            object_type = meta.get("object_type") or record.get("type")
            merged = objects.setdefault(object_id, {"id": object_id, "type": object_type})
            for key, value in record.items():
                if key in ("id", "type") or _is_nested_object(value):
                    continue
                if value is None and merged.get(key) is not None:
                    continue
                merged[key] = value

            parent_id = meta.get("parent_id")
            if parent_id is not None:
                key = meta.get("relationship_key") or snake_case(object_type or "")
                links[object_id] = (parent_id, key, bool(meta.get("is_array_type")))

        children: Dict[Any, Dict[str, Dict[str, Any]]] = {}
        for child_id, (parent_id, key, is_array) in links.items():
            if parent_id not in objects:
                continue
            relation = children.setdefault(parent_id, {}).setdefault(
                key, {"is_array": is_array, "ids": []}
            )
            relation["is_array"] = is_array
            if child_id not in relation["ids"]:
                relation["ids"].append(child_id)

        visited: Set[Any] = set()
        roots: List[Dict[str, Any]] = []
        root_ids = [oid for oid in objects if oid not in links or links[oid][0] not in objects]
        for object_id in root_ids:
            node = self._nest(object_id, objects, children, visited)
            if node is not None:
                roots.append(node)
        # Objects only reachable through a parent cycle.
        for object_id in objects:
            if object_id not in visited:
                logger.warning("Parent cycle detected at object {object_id}", object_id=object_id)
                node = self._nest(object_id, objects, children, visited)
                if node is not None:
                    roots.append(node)

        by_type = Counter(obj.get("type") for obj in objects.values())
        return {
            "extracted_at": datetime.now(UTC).isoformat(),
            "objects": roots,
            "summary": {"total_objects": len(objects), "by_type": dict(by_type)},
        }

    def _nest(
        self,
        object_id: Any,
        objects: Dict[Any, Dict[str, Any]],
        children: Dict[Any, Dict[str, Dict[str, Any]]],
        visited: Set[Any],
    ) -> Optional[Dict[str, Any]]:
        if object_id in visited:
            return None
        visited.add(object_id)

        node = dict(objects[object_id])
        for key, relation in (children.get(object_id) or {}).items():
            nested = [
                child
                for child in (self._nest(cid, objects, children, visited) for cid in relation["ids"])
                if child is not None
            ]
            if relation["is_array"]:
                node[key] = nested
            elif nested:
                if len(nested) > 1:
                    logger.warning(
                        "Single relationship {key} of object {object_id} has {count} children; keeping the last",
                        key=key,
                        object_id=object_id,
                        count=len(nested),
                    )
                node[key] = nested[-1]
        return node
