"""Remaining-field extraction for resolved objects.

Exhaustive groups are extracted with a single call over every classified page.
Skim groups read the pages in batches, asking for a 1-5 confidence per field,
and stop as soon as every expected field has reached the confidence threshold.
Both modes ask for the page number each value was read from.

When two skim batches return different values for a field with the same
confidence, the earlier value is held and the disagreement is settled by one
follow-up call over the pages involved.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml
from loguru import logger
from sqlalchemy.orm import Session

from docgraph.extraction.field_types import find_field_definition
from docgraph.extraction.fragment_selector import FragmentPathResolver
from docgraph.extraction.inference import InferenceService
from docgraph.extraction.models import FieldConflict, FieldExtractionResult, RemainingGroup
from docgraph.extraction.objects import ObjectWriter, object_snapshot
from docgraph.extraction.prompts import PromptLibrary
from docgraph.storage.models import (
    OPERATION_EXTRACT_REMAINING,
    Artifact,
    ResolvedObject,
    TaskProcess,
    TaskRun,
)
from docgraph.storage.store import get_object
from docgraph.utils.config import ExtractionRunnerConfig, clamp_timeout
from docgraph.utils.errors import ValidationError
from docgraph.utils.text import truncate

PAGE_SOURCES_KEY = "page_sources"


def drop_nulls(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


def batched(items: Sequence[Any], size: int) -> List[List[Any]]:
    size = max(1, int(size))
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def values_differ(left: Any, right: Any) -> bool:
    """Strings are compared trimmed and case-insensitively."""
    if isinstance(left, str) and isinstance(right, str):
        return left.strip().lower() != right.strip().lower()
    return left != right


def page_sources_schema(fields: Sequence[str]) -> Dict[str, Any]:
    return {
        "type": "object",
        "description": "Page numbers where each field value was found. Only include fields that have values.",
        "properties": {field: {"type": "integer"} for field in fields},
    }


def parse_page_sources(raw: Any, data: Dict[str, Any]) -> Dict[str, int]:
    """Keep integer page numbers for fields that have a value."""
    if not isinstance(raw, dict):
        return {}
    pages: Dict[str, int] = {}
    for field, page in raw.items():
        if field not in data or isinstance(page, bool):
            continue
        try:
            pages[field] = int(page)
        except (TypeError, ValueError):
            continue
    return pages


class FieldExtractionEngine:
    """Executes ``Extract Remaining`` processes."""

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
    def execute(self, task_run: TaskRun, process: TaskProcess) -> Dict[str, Any]:
        """Extract the group's fields for the process's object and store them.

        Raises:
            ValidationError: If the process has no input artifacts
        """
        inputs = list(process.input_artifacts)
        if not inputs:
            raise ValidationError(f"Extract Remaining process {process.id} has no input artifacts")

        meta = process.meta or {}
        group = RemainingGroup.model_validate(meta.get("extraction_group") or {})
        obj = get_object(self.session, meta.get("object_id"))
        if obj is None:
            logger.warning(
                "Resolved object {object_id} not found; nothing to extract",
                object_id=meta.get("object_id"),
                task_process_id=process.id,
            )
            return {}

        schema = task_run.task_definition.schema_json or {}
        search_mode = meta.get("search_mode") or group.search_mode
        result = self.extract(obj, group, inputs, search_mode, schema=schema)
        data = result.data
        if not data:
            logger.info(
                "No {group} values found for object {object_id}",
                group=group.name,
                object_id=obj.id,
            )
            return {}

        writer = ObjectWriter(self.session, team_id=task_run.team_id, schema=schema)
        writer.save_fields(obj, data)

        parent, relationship_key = writer.parent_of(obj.id)
        artifact = Artifact(
            task_run_id=task_run.id,
            parent_artifact_id=inputs[0].id,
            name=truncate(f"{group.name}: {obj.name or obj.id}"),
            json_content={"id": obj.id, "type": obj.type, **data},
            meta={
                "operation": OPERATION_EXTRACT_REMAINING,
                "object_id": obj.id,
                "object_type": obj.type,
                "parent_id": parent.id if parent else None,
                "parent_type": parent.type if parent else None,
                "relationship_key": relationship_key,
                "is_array_type": group.is_array,
                "extraction_mode": search_mode,
                "extraction_group": group.name,
                "level": int(meta.get("level", group.level)),
                "page_sources": result.page_sources,
                "resolved_conflicts": result.resolved_fields,
                "task_process_id": process.id,
            },
        )
        self.session.add(artifact)
        self.session.flush()
        process.output_artifacts.append(artifact)

        logger.info(
            "Extracted {count} fields for {object_type} {object_id}",
            count=len(data),
            object_type=obj.type,
            object_id=obj.id,
            group=group.name,
            mode=search_mode,
        )
        return data

    def extract(
        self,
        obj: ResolvedObject,
        group: RemainingGroup,
        artifacts: Sequence[Artifact],
        search_mode: str,
        *,
        schema: Optional[Dict[str, Any]] = None,
    ) -> FieldExtractionResult:
        if search_mode == "skim":
            return self.extract_skim(obj, group, artifacts, schema=schema)
        return self.extract_exhaustive(obj, group, artifacts, schema=schema)

    def extract_exhaustive(
        self,
        obj: ResolvedObject,
        group: RemainingGroup,
        artifacts: Sequence[Artifact],
        *,
        schema: Optional[Dict[str, Any]] = None,
    ) -> FieldExtractionResult:
        """One call over all artifacts; the answer is returned as-is (minus nulls)."""
        system, user = self.prompts.render("field_extraction", self._context(obj, group))
        data_schema = self._data_schema(group, schema)
        response_schema = {
            **data_schema,
            "properties": {
                **data_schema["properties"],
                PAGE_SOURCES_KEY: page_sources_schema(list(data_schema["properties"])),
            },
        }
        result = self.inference.submit(
            user,
            artifacts=artifacts,
            response_schema=response_schema,
            timeout=clamp_timeout(self.config.extraction_timeout, 300),
            system=system,
        )
        if not result.completed or result.json_data is None:
            logger.warning(
                "Exhaustive extraction did not complete",
                group=group.name,
                object_id=obj.id,
                error=result.error,
            )
            return FieldExtractionResult()

        payload = dict(result.json_data)
        raw_pages = payload.pop(PAGE_SOURCES_KEY, None)
        data = drop_nulls(self._leaf_data(payload, group))
        data.pop(PAGE_SOURCES_KEY, None)
        return FieldExtractionResult(data=data, page_sources=parse_page_sources(raw_pages, data))

    def extract_skim(
        self,
        obj: ResolvedObject,
        group: RemainingGroup,
        artifacts: Sequence[Artifact],
        *,
        schema: Optional[Dict[str, Any]] = None,
    ) -> FieldExtractionResult:
        """Batch through artifacts until every expected field is confident enough."""
        expected = self.paths.get_expected_fields(group.fragment_selector) or list(group.fields)
        threshold = self.config.confidence_threshold
        batches = batched(list(artifacts), self.config.skim_batch_size)

        state = FieldExtractionResult()
        read: List[Artifact] = []
        for index, batch in enumerate(batches, start=1):
            data, scores, pages = self._skim_batch(obj, group, batch, index, len(batches), schema)
            state = self.merge_skim_results(state, data, scores, pages)
            read.extend(batch)

            if expected and all(state.confidence.get(field, 0) >= threshold for field in expected):
                logger.info(
                    "Skim extraction reached confidence threshold",
                    group=group.name,
                    object_id=obj.id,
                    batch=index,
                    batches=len(batches),
                )
                break

        if state.conflicts:
            self.resolve_conflicts(obj, group, state, read, schema)
        return state

    @staticmethod
    def merge_skim_results(
        current: FieldExtractionResult,
        data: Dict[str, Any],
        scores: Dict[str, int],
        page_sources: Optional[Dict[str, int]] = None,
    ) -> FieldExtractionResult:
        """Merge one skim batch into the running result.

        A more confident value replaces the held one. An equally confident value
        that differs is recorded as a conflict and the held value is kept. The
        highest confidence seen per field is kept. Page sources follow the value.
        """
        page_sources = page_sources or {}
        merged = dict(current.data)
        confidence = dict(current.confidence)
        pages = dict(current.page_sources)
        conflicts = list(current.conflicts)

        for field, value in data.items():
            score = scores.get(field, 0)
            held = confidence.get(field, 0)
            if field not in merged:
                merged[field] = value
            elif not values_differ(merged[field], value):
                if field not in pages and field in page_sources:
                    pages[field] = page_sources[field]
                continue
            elif score > held:
                merged[field] = value
                conflicts = [c for c in conflicts if c.field_name != field]
            elif score == held:
                conflicts.append(
                    FieldConflict(
                        field_name=field,
                        existing_value=merged[field],
                        new_value=value,
                        existing_page=pages.get(field),
                        new_page=page_sources.get(field),
                    )
                )
                continue
            else:
                continue

            if field in page_sources:
                pages[field] = page_sources[field]
            else:
                pages.pop(field, None)

        for field, score in scores.items():
            confidence[field] = max(confidence.get(field, 0), score)
        return FieldExtractionResult(
            data=merged,
            confidence=confidence,
            page_sources=pages,
            conflicts=conflicts,
            resolved_fields=list(current.resolved_fields),
        )

    def resolve_conflicts(
        self,
        obj: ResolvedObject,
        group: RemainingGroup,
        state: FieldExtractionResult,
        artifacts: Sequence[Artifact],
        schema: Optional[Dict[str, Any]] = None,
    ) -> FieldExtractionResult:
        """Ask once which value is right for every conflicting field; updates ``state``.

        Only the pages named by the conflicts are sent, or every page read when the
        conflicts name none. An incomplete call keeps the held values.
        """
        conflict_pages = {
            page
            for conflict in state.conflicts
            for page in (conflict.existing_page, conflict.new_page)
            if page is not None
        }
        pages = [a for a in artifacts if getattr(a, "position", None) in conflict_pages] or list(artifacts)

        properties = self._data_schema(group, schema)["properties"]
        fields = list(dict.fromkeys(conflict.field_name for conflict in state.conflicts))
        listed = [
            {
                "field": conflict.field_name,
                "description": properties.get(conflict.field_name, {}).get("description", ""),
                "option_a": {"value": conflict.existing_value, "page": conflict.existing_page},
                "option_b": {"value": conflict.new_value, "page": conflict.new_page},
            }
            for conflict in state.conflicts
        ]
        context = {
            **self._context(obj, group),
            "conflicts": yaml.safe_dump(listed, sort_keys=False, default_flow_style=False).strip(),
        }
        system, user = self.prompts.render("conflict_resolution", context)
        response_schema = {
            "type": "object",
            "properties": {
                field: {
                    "type": "object",
                    "properties": {
                        "resolved_value": properties.get(field, {"type": "string"}),
                        "source_page": {"type": "integer"},
                    },
                    "required": ["resolved_value"],
                }
                for field in fields
            },
        }
        result = self.inference.submit(
            user,
            artifacts=pages,
            response_schema=response_schema,
            timeout=clamp_timeout(self.config.conflict_resolution_timeout, 120),
            system=system,
        )
        if not result.completed or result.json_data is None:
            logger.warning(
                "Conflict resolution did not complete; keeping first values",
                group=group.name,
                object_id=obj.id,
                fields=fields,
                error=result.error,
            )
            return state

        for field in fields:
            answer = result.json_data.get(field)
            if not isinstance(answer, dict) or answer.get("resolved_value") is None:
                continue
            state.data[field] = answer["resolved_value"]
            page = parse_page_sources({field: answer.get("source_page")}, state.data)
            if page:
                state.page_sources.update(page)
            else:
                state.page_sources.pop(field, None)
            state.resolved_fields.append(field)

        logger.info(
            "Resolved {count} field conflicts for {object_type} {object_id}",
            count=len(state.resolved_fields),
            object_type=obj.type,
            object_id=obj.id,
            group=group.name,
            pages=len(pages),
        )
        return state

    # -----------------------
    # Helpers
    # -----------------------
    def _skim_batch(
        self,
        obj: ResolvedObject,
        group: RemainingGroup,
        batch: Sequence[Artifact],
        index: int,
        total: int,
        schema: Optional[Dict[str, Any]],
    ) -> Tuple[Dict[str, Any], Dict[str, int], Dict[str, int]]:
        context = {**self._context(obj, group), "batch_number": index, "batch_count": total}
        system, user = self.prompts.render("field_extraction_skim", context)
        data_schema = self._data_schema(group, schema)
        fields = list(data_schema["properties"])
        response_schema = {
            "type": "object",
            "properties": {
                "data": data_schema,
                "confidence": {
                    "type": "object",
                    "properties": {field: {"type": "integer", "minimum": 1, "maximum": 5} for field in fields},
                },
                PAGE_SOURCES_KEY: page_sources_schema(fields),
            },
            "required": ["data", "confidence"],
        }
        result = self.inference.submit(
            user,
            artifacts=batch,
            response_schema=response_schema,
            timeout=clamp_timeout(self.config.extraction_timeout, 300),
            system=system,
        )
        if not result.completed or result.json_data is None:
            logger.warning(
                "Skim batch {index} did not complete",
                index=index,
                group=group.name,
                object_id=obj.id,
                error=result.error,
            )
            return {}, {}, {}

        raw_data = result.json_data.get("data")
        data = drop_nulls(self._leaf_data(raw_data, group)) if isinstance(raw_data, dict) else {}
        scores: Dict[str, int] = {}
        for field, score in (result.json_data.get("confidence") or {}).items():
            try:
                scores[field] = min(5, max(1, int(score)))
            except (TypeError, ValueError):
                continue
        # A null value carries no confidence.
        scores = {field: score for field, score in scores.items() if field in data}
        return data, scores, parse_page_sources(result.json_data.get(PAGE_SOURCES_KEY), data)

    def _context(self, obj: ResolvedObject, group: RemainingGroup) -> Dict[str, Any]:
        return {
            "object_type": obj.type,
            "group_name": group.name,
            "group_description": group.description or "(none)",
            "fields": ", ".join(self._field_names(group)),
            "object_json": json.dumps(object_snapshot(obj), indent=2, default=str),
        }

    def _field_names(self, group: RemainingGroup) -> List[str]:
        return list(self.paths.get_leaf_fields(group.fragment_selector)) or list(group.fields)

    def _data_schema(self, group: RemainingGroup, schema: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        properties: Dict[str, Any] = {}
        for field in self._field_names(group):
            definition = find_field_definition(field, schema) or {}
            field_type = definition.get("type")
            if field_type in (None, "object"):
                field_type = "string"
            properties[field] = {"type": field_type}
            if definition.get("format"):
                properties[field]["format"] = definition["format"]
            if definition.get("description"):
                properties[field]["description"] = definition["description"]
            if field_type == "array" and "items" in definition:
                properties[field]["items"] = definition["items"]
        return {"type": "object", "properties": properties}

    def _leaf_data(self, data: Dict[str, Any], group: RemainingGroup) -> Dict[str, Any]:
        leaf = self.paths.unwrap_data(data, group.fragment_selector)
        if isinstance(leaf, list):
            leaf = leaf[0] if leaf and isinstance(leaf[0], dict) else {}
        return leaf if isinstance(leaf, dict) else {}
