"""Identity extraction: find object instances in classified pages and resolve them.

One inference call per ``Extract Identity`` process returns every instance of the
group's object type found in the process's pages, each with the search queries
the model proposes for finding it among existing records. Every instance is then
either matched to an existing object or created, linked to its parent, and
recorded on the run and in a provenance artifact.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger
from sqlalchemy.orm import Session

from docgraph.extraction.duplicate_matcher import DuplicateMatcher
from docgraph.extraction.field_types import find_field_definition
from docgraph.extraction.fragment_selector import FragmentPathResolver
from docgraph.extraction.inference import InferenceService
from docgraph.extraction.models import IdentityGroup
from docgraph.extraction.objects import (
    ObjectWriter,
    is_blank,
    object_snapshot,
    resolve_object_name,
)
from docgraph.extraction.prompts import PromptLibrary
from docgraph.storage.models import (
    OPERATION_EXTRACT_IDENTITY,
    Artifact,
    ResolvedObject,
    TaskProcess,
    TaskRun,
)
from docgraph.storage.store import get_object, merge_meta
from docgraph.utils.config import ExtractionRunnerConfig, clamp_timeout
from docgraph.utils.errors import ValidationError
from docgraph.utils.text import truncate

SEARCH_QUERY_KEY = "_search_query"
PARENT_ID_KEY = "parent_id"
_FIELD_SCHEMA_KEYS = ("type", "format", "description", "enum", "title")


def record_resolved_object(task_run: TaskRun, object_type: str, level: int, object_id: int) -> None:
    """Add ``object_id`` to ``run.meta.resolved_objects[object_type][level]`` once."""
    resolved = dict((task_run.meta or {}).get("resolved_objects") or {})
    by_level = dict(resolved.get(object_type) or {})
    ids = list(by_level.get(str(level)) or [])
    if object_id not in ids:
        ids.append(object_id)
    by_level[str(level)] = ids
    resolved[object_type] = by_level
    merge_meta(task_run, {"resolved_objects": resolved})


def resolved_ids(task_run: TaskRun, object_type: str, level: int) -> List[int]:
    by_level = ((task_run.meta or {}).get("resolved_objects") or {}).get(object_type) or {}
    return list(by_level.get(str(level)) or [])


class IdentityResolutionEngine:
    """Executes ``Extract Identity`` processes."""

    def __init__(
        self,
        session: Session,
        inference: InferenceService,
        prompts: PromptLibrary,
        config: Optional[ExtractionRunnerConfig] = None,
        *,
        paths: Optional[FragmentPathResolver] = None,
    ) -> None:
        self.session = session
        self.inference = inference
        self.prompts = prompts
        self.config = config or ExtractionRunnerConfig()
        self.paths = paths or FragmentPathResolver()

    # -----------------------
    # Public API
    # -----------------------
    def execute(self, task_run: TaskRun, process: TaskProcess) -> Optional[ResolvedObject]:
        """Extract and resolve every instance of the process's identity group.

        Returns:
            The last resolved object, or None when nothing was extracted or the
            inference call did not complete.

        Raises:
            ValidationError: If the process has no input artifacts
        """
        inputs = list(process.input_artifacts)
        if not inputs:
            raise ValidationError(f"Extract Identity process {process.id} has no input artifacts")

        meta = process.meta or {}
        group = IdentityGroup.model_validate(meta.get("identity_group") or {})
        level = int(meta.get("level", group.level))
        task_definition = task_run.task_definition
        schema = task_definition.schema_json or {}

        selector = group.fragment_selector
        leaf_key = self.paths.get_leaf_key(selector, group.object_type)
        is_array = self.paths.is_leaf_array_type(selector) or group.is_array
        parent_type = group.parent_type or self.paths.get_parent_type(selector)
        parent_ids = self._parent_candidates(process, inputs, parent_type)

        if parent_type and not parent_ids:
            logger.warning(
                "No {parent_type} found for {object_type}; resolving without a parent",
                parent_type=parent_type,
                object_type=group.object_type,
                task_process_id=process.id,
            )

        system, user = self.prompts.render(
            "identity_extraction",
            {
                "object_type": group.object_type,
                "description": group.description or "(none)",
                "identity_fields": ", ".join(group.identity_fields),
                "skim_fields": ", ".join(group.skim_fields) or "(none)",
                "leaf_key": leaf_key,
                "is_array": "yes" if is_array else "no",
                "parent_context": self._parent_context(parent_type, parent_ids),
            },
        )
        result = self.inference.submit(
            user,
            artifacts=inputs,
            response_schema=self.build_response_schema(
                group, schema, leaf_key, is_array, parent_ids
            ),
            timeout=clamp_timeout(self.config.extraction_timeout, 300),
            system=system,
        )
        if not result.completed or result.json_data is None:
            logger.warning(
                "Identity extraction did not complete for {object_type}",
                object_type=group.object_type,
                task_process_id=process.id,
                error=result.error,
            )
            return None

        data = result.json_data
        parent = self._choose_parent(parent_ids, data.get(PARENT_ID_KEY))
        instances = self._instances(data, selector, leaf_key)
        if not instances:
            logger.info(
                "No {object_type} instances found",
                object_type=group.object_type,
                task_process_id=process.id,
            )
            return None

        matcher = DuplicateMatcher(
            self.session,
            self.inference,
            self.prompts,
            self.config,
            team_id=task_run.team_id,
            schema=schema,
        )
        writer = ObjectWriter(self.session, team_id=task_run.team_id, schema=schema)
        root_scope = (parent.root_object_id or parent.id) if parent else None

        last: Optional[ResolvedObject] = None
        for raw in instances:
            instance = dict(raw)
            raw_queries = instance.pop(SEARCH_QUERY_KEY, None)
            instance.pop(PARENT_ID_KEY, None)

            if all(is_blank(instance.get(field)) for field in group.identity_fields):
                logger.debug(
                    "Skipping {object_type} instance without identity values",
                    object_type=group.object_type,
                )
                continue

            name = resolve_object_name(instance, group.identity_fields, schema)
            if name:
                instance["name"] = name

            search_queries = self._search_queries(raw_queries, instance, group.identity_fields)
            found = matcher.find_candidates(
                group.object_type,
                search_queries,
                root_object_id=root_scope,
                schema_definition_id=task_definition.schema_definition_id,
                extracted_data=instance,
                identity_fields=group.identity_fields,
            )

            match_id = found.exact_match_id
            if not found.has_exact_match and len(found.candidates) > 1:
                resolution = matcher.resolve_duplicate(found.candidates, instance)
                if resolution is None:
                    logger.warning(
                        "Skipping {object_type} instance after failed duplicate resolution",
                        object_type=group.object_type,
                        name=name,
                    )
                    continue
                if resolution.is_duplicate:
                    match_id = resolution.existing_object_id

            obj = get_object(self.session, match_id) if match_id is not None else None
            was_existing = obj is not None
            if obj is not None:
                writer.save_fields(obj, instance)
            else:
                obj = writer.create(
                    group.object_type,
                    instance,
                    root_object_id=root_scope,
                    schema_definition_id=task_definition.schema_definition_id,
                )

            if parent is not None:
                writer.ensure_relationship(parent.id, obj.id, leaf_key)

            record_resolved_object(task_run, group.object_type, level, obj.id)
            for artifact in inputs:
                self._record_on_artifact(artifact, group.object_type, obj.id)

            provenance = self._provenance_artifact(
                task_run,
                process,
                inputs[0],
                obj,
                group=group,
                parent=parent,
                parent_type=parent_type,
                relationship_key=leaf_key,
                is_array=is_array,
                search_queries=search_queries,
                was_existing=was_existing,
                match_id=match_id if was_existing else None,
                level=level,
            )
            process.output_artifacts.append(provenance)

            logger.info(
                "Resolved {object_type} {object_id}",
                object_type=group.object_type,
                object_id=obj.id,
                was_existing=was_existing,
                level=level,
            )
            last = obj

        self.session.flush()
        return last

    def build_response_schema(
        self,
        group: IdentityGroup,
        schema: Dict[str, Any],
        leaf_key: str,
        is_array: bool,
        parent_ids: Sequence[int] = (),
    ) -> Dict[str, Any]:
        """Leaf-only response schema with an embedded ``_search_query`` per instance."""
        fields = list(self.paths.get_leaf_fields(group.fragment_selector)) or list(
            dict.fromkeys(group.identity_fields + group.skim_fields)
        )
        properties: Dict[str, Any] = {field: self._field_schema(field, schema) for field in fields}

        query = {
            "type": "object",
            "description": "Field name -> search criteria (LIKE pattern, keyword list or comparison)",
            "additionalProperties": True,
        }
        if is_array:
            properties[SEARCH_QUERY_KEY] = {
                "type": "array",
                "description": "Queries for finding this record, loosest first",
                "items": query,
            }
        else:
            properties[SEARCH_QUERY_KEY] = query

        instance = {"type": "object", "properties": properties, "required": [SEARCH_QUERY_KEY]}
        response: Dict[str, Any] = {
            "type": "object",
            "properties": {
                leaf_key: {"type": "array", "items": instance} if is_array else instance,
            },
            "required": [leaf_key],
        }
        if len(parent_ids) > 1:
            response["properties"][PARENT_ID_KEY] = {"type": "integer", "enum": list(parent_ids)}
        return response

    # -----------------------
    # Helpers
    # -----------------------
    def _field_schema(self, field: str, schema: Dict[str, Any]) -> Dict[str, Any]:
        definition = find_field_definition(field, schema) or {}
        field_schema = {k: definition[k] for k in _FIELD_SCHEMA_KEYS if k in definition}
        if field_schema.get("type") in (None, "object", "array"):
            field_schema["type"] = "string"
        return field_schema

    def _parent_candidates(
        self, process: TaskProcess, inputs: Sequence[Artifact], parent_type: Optional[str]
    ) -> List[int]:
        if not parent_type:
            return []
        ids: List[int] = []
        for artifact in inputs:
            for object_id in ((artifact.meta or {}).get("resolved_objects") or {}).get(parent_type) or []:
                if object_id not in ids:
                    ids.append(object_id)
        if not ids:
            # Pages not read by the parent's identity pass fall back to every parent
            # resolved on the previous level.
            ids = list(dict.fromkeys((process.meta or {}).get("parent_object_ids") or []))
        return [object_id for object_id in ids if get_object(self.session, object_id) is not None]

    def _parent_context(self, parent_type: Optional[str], parent_ids: Sequence[int]) -> str:
        if not parent_ids:
            return "none"
        lines = [f"Possible {parent_type} records (answer with parent_id):"]
        for object_id in parent_ids:
            obj = get_object(self.session, object_id)
            lines.append(json.dumps(object_snapshot(obj), default=str))
        return "\n".join(lines)

    def _choose_parent(self, parent_ids: Sequence[int], answer: Any) -> Optional[ResolvedObject]:
        if not parent_ids:
            return None
        chosen = parent_ids[0]
        if len(parent_ids) > 1:
            try:
                if int(answer) in parent_ids:
                    chosen = int(answer)
            except (TypeError, ValueError):
                logger.warning("Invalid parent_id {answer}; using first candidate", answer=answer)
        return get_object(self.session, chosen)

    def _instances(self, data: Dict[str, Any], selector: Dict[str, Any], leaf_key: str) -> List[Dict[str, Any]]:
        if leaf_key in data:
            leaf = data[leaf_key]
        else:
            leaf = self.paths.unwrap_data(data, selector, preserve_leaf_array=True)
        if isinstance(leaf, dict):
            leaf = [leaf]
        if not isinstance(leaf, list):
            return []
        return [item for item in leaf if isinstance(item, dict)]

    @staticmethod
    def _search_queries(
        raw: Any, instance: Dict[str, Any], identity_fields: Sequence[str]
    ) -> List[Dict[str, Any]]:
        if isinstance(raw, dict):
            raw = [raw]
        queries = [q for q in raw or [] if isinstance(q, dict) and q]
        if queries:
            return queries
        default = {
            field: f"%{instance[field]}%"
            for field in identity_fields
            if not is_blank(instance.get(field)) and not isinstance(instance[field], (list, dict))
        }
        return [default] if default else []

    @staticmethod
    def _record_on_artifact(artifact: Artifact, object_type: str, object_id: int) -> None:
        resolved = dict((artifact.meta or {}).get("resolved_objects") or {})
        ids = list(resolved.get(object_type) or [])
        if object_id not in ids:
            ids.append(object_id)
        resolved[object_type] = ids
        merge_meta(artifact, {"resolved_objects": resolved})

    def _provenance_artifact(
        self,
        task_run: TaskRun,
        process: TaskProcess,
        source: Artifact,
        obj: ResolvedObject,
        *,
        group: IdentityGroup,
        parent: Optional[ResolvedObject],
        parent_type: Optional[str],
        relationship_key: str,
        is_array: bool,
        search_queries: List[Dict[str, Any]],
        was_existing: bool,
        match_id: Optional[int],
        level: int,
    ) -> Artifact:
        artifact = Artifact(
            task_run_id=task_run.id,
            parent_artifact_id=source.id,
            name=truncate(f"{group.object_type}: {obj.name or obj.id}"),
            json_content=object_snapshot(obj),
            meta={
                "operation": OPERATION_EXTRACT_IDENTITY,
                "object_id": obj.id,
                "object_type": obj.type,
                "parent_id": parent.id if parent else None,
                "parent_type": parent_type if parent else None,
                "relationship_key": relationship_key,
                "is_array_type": is_array,
                "search_query": search_queries,
                "was_existing": was_existing,
                "match_id": match_id,
                "level": level,
                "identity_group": group.name,
                "task_process_id": process.id,
            },
        )
        self.session.add(artifact)
        self.session.flush()
        return artifact
