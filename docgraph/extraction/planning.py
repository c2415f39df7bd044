"""Per-object-type extraction planning.

For every object type in the schema hierarchy the planner asks the model for:

1. identity fields (enough to tell two instances apart) and skim fields, then
2. named groups covering every remaining field, each tagged skim or exhaustive.

Remaining-field groupings are validated for full coverage and re-prompted with
the missing fields until covered or the attempt ceiling is hit. The per-object
results are compiled into a level-ordered :class:`ExtractionPlan` that is cached
on the task definition under a fingerprint of schema + runner configuration.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import yaml
from loguru import logger

from docgraph.extraction.fragment_selector import FragmentPathResolver
from docgraph.extraction.inference import InferenceService
from docgraph.extraction.models import (
    CoverageReport,
    ExtractionPlan,
    IdentityGroup,
    ObjectTypeNode,
    PlanLevel,
    RemainingGroup,
)
from docgraph.extraction.prompts import PromptLibrary
from docgraph.storage.models import TaskDefinition, TaskProcess, TaskRun
from docgraph.storage.store import merge_meta
from docgraph.utils.config import ExtractionRunnerConfig, clamp_timeout
from docgraph.utils.errors import ValidationError
from docgraph.utils.hashing import fingerprint
from docgraph.utils.text import snake_case

MAX_FIELD_GROUPING_ATTEMPTS = 3
PLAN_CACHE_META_KEY = "extraction_plan_cache"
VALID_SEARCH_MODES = ("skim", "exhaustive")
DEFAULT_GROUP_NAME = "Unnamed Group"


def identity_group_name(object_type: str) -> str:
    return f"{object_type} Identification"


def node_from_meta(meta: Dict[str, Any]) -> ObjectTypeNode:
    return ObjectTypeNode(
        name=meta["object_type"],
        path=meta.get("object_path", ""),
        level=int(meta.get("level", 0)),
        parent_type=meta.get("parent_type"),
        is_array=bool(meta.get("is_array", False)),
        simple_fields=meta.get("simple_fields") or {},
    )


def node_meta(node: ObjectTypeNode) -> Dict[str, Any]:
    return {
        "object_type": node.name,
        "object_path": node.path,
        "level": node.level,
        "parent_type": node.parent_type,
        "is_array": node.is_array,
        "simple_fields": node.simple_fields,
    }


class ExtractionPlanningEngine:
    """Builds, validates, compiles and caches extraction plans."""

    def __init__(
        self,
        inference: InferenceService,
        prompts: PromptLibrary,
        config: Optional[ExtractionRunnerConfig] = None,
        *,
        paths: Optional[FragmentPathResolver] = None,
    ) -> None:
        self.inference = inference
        self.prompts = prompts
        self.config = config or ExtractionRunnerConfig()
        self.paths = paths or FragmentPathResolver()

    # -----------------------
    # Plan: Identify
    # -----------------------
    def plan_identity(self, node: ObjectTypeNode) -> Dict[str, Any]:
        """Ask the model which fields identify an instance of ``node``.

        Raises:
            ValidationError: If the call is incomplete or the answer is malformed
        """
        field_keys = list(node.simple_fields)
        system, user = self.prompts.render(
            "identity_planning",
            {
                "object_type": node.name,
                "object_path": node.path or "(root)",
                "level": node.level,
                "parent_type": node.parent_type or "none",
                "is_array": "yes" if node.is_array else "no",
                "fields_yaml": self._fields_yaml(node.simple_fields),
                "group_max_points": self.config.group_max_points,
            },
        )
        result = self.inference.submit(
            user,
            response_schema=self._identity_response_schema(field_keys),
            timeout=clamp_timeout(self.config.extraction_timeout, 300),
            system=system,
        )
        if not result.completed or result.json_data is None:
            raise ValidationError(
                f"Identity planning failed for {node.name}: {result.error or 'incomplete response'}"
            )

        data = result.json_data
        missing_keys = [k for k in ("identity_fields", "skim_fields", "description") if k not in data]
        if missing_keys:
            raise ValidationError(
                f"Identity planning response for {node.name} is missing: {', '.join(missing_keys)}"
            )

        identity_fields = self._known_fields(data.get("identity_fields"), field_keys, node.name)
        skim_fields = self._known_fields(data.get("skim_fields"), field_keys, node.name)
        if not skim_fields:
            skim_fields = list(identity_fields)

        logger.info(
            "Planned identity fields for {object_type}",
            object_type=node.name,
            identity_fields=identity_fields,
            skim_fields=skim_fields,
        )
        return {
            "identity_fields": identity_fields,
            "skim_fields": skim_fields,
            "description": str(data.get("description") or ""),
            "reasoning": str(data.get("reasoning") or ""),
        }

    def remaining_fields(self, node: ObjectTypeNode, identity_plan: Dict[str, Any]) -> List[str]:
        """Simple fields neither used for identity nor extracted during the skim pass."""
        excluded = set(identity_plan.get("identity_fields") or []) | set(
            identity_plan.get("skim_fields") or []
        )
        return [key for key in node.simple_fields if key not in excluded]

    def execute_identify(self, task_run: TaskRun, process: TaskProcess) -> Dict[str, Any]:
        """Run a ``Plan: Identify`` process and store its result on the run."""
        node = node_from_meta(process.meta or {})
        identity_plan = self.plan_identity(node)
        remaining = self.remaining_fields(node, identity_plan)

        object_plan = {
            **node_meta(node),
            **identity_plan,
            "remaining_fields": remaining,
            "extraction_groups": [],
        }
        self._store_object_plan(task_run, node.name, object_plan)
        merge_meta(process, {"has_remaining_fields": bool(remaining)})
        return object_plan

    # -----------------------
    # Plan: Remaining
    # -----------------------
    def plan_remaining(
        self,
        node: ObjectTypeNode,
        remaining: Sequence[str],
        *,
        attempt_history: Optional[List[Dict[str, Any]]] = None,
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """Group ``remaining`` fields, re-prompting for uncovered fields.

        Returns:
            ``(groups, attempt_history)``

        Raises:
            ValidationError: If fields are still uncovered after the attempt ceiling
        """
        required = list(remaining)
        fields_to_group = list(required)
        accumulated: List[Dict[str, Any]] = []
        if attempt_history is None:
            attempt_history = []

        for attempt in range(1, MAX_FIELD_GROUPING_ATTEMPTS + 1):
            groups = self._request_groups(node, fields_to_group, attempt)
            combined = accumulated + groups
            raw_report = self.validate_field_coverage(required, combined)
            accumulated = self.deduplicate_groups(combined)
            report = self.validate_field_coverage(required, accumulated)

            attempt_history.append(
                {
                    "attempt": attempt,
                    "fields_to_group": list(fields_to_group),
                    "groups_returned": groups,
                    "covered_fields": report.covered,
                    "missing_fields": report.missing,
                    "duplicate_fields": raw_report.duplicates,
                }
            )

            if report.is_complete:
                logger.info(
                    "Grouped remaining fields for {object_type}",
                    object_type=node.name,
                    groups=len(accumulated),
                    attempts=attempt,
                )
                return accumulated, attempt_history

            logger.warning(
                "Remaining field grouping incomplete for {object_type}",
                object_type=node.name,
                attempt=attempt,
                missing=report.missing,
            )
            fields_to_group = report.missing

        missing = attempt_history[-1]["missing_fields"]
        raise ValidationError(
            f"Failed to cover all fields after {MAX_FIELD_GROUPING_ATTEMPTS} attempts for "
            f"{node.name}. Missing fields: {', '.join(missing)}"
        )

    def execute_remaining(self, task_run: TaskRun, process: TaskProcess) -> List[Dict[str, Any]]:
        """Run a ``Plan: Remaining`` process and store its groups on the run."""
        meta = process.meta or {}
        node = node_from_meta(meta)
        remaining = list(meta.get("remaining_fields") or [])

        attempt_history: List[Dict[str, Any]] = []
        try:
            groups, _ = self.plan_remaining(node, remaining, attempt_history=attempt_history)
        except ValidationError:
            merge_meta(
                process,
                {"attempt_history": attempt_history, "total_attempts": len(attempt_history)},
            )
            raise

        merge_meta(
            process,
            {"attempt_history": attempt_history, "total_attempts": len(attempt_history)},
        )

        plans = dict((task_run.meta or {}).get("per_object_plans") or {})
        object_plan = dict(plans.get(node.name) or node_meta(node))
        object_plan["extraction_groups"] = groups
        self._store_object_plan(task_run, node.name, object_plan)
        return groups

    def validate_field_coverage(
        self, required: Iterable[str], groups: Sequence[Dict[str, Any]]
    ) -> CoverageReport:
        """Compare ``required`` fields against the fields named by ``groups``."""
        required_list = list(required)
        required_set = set(required_list)
        seen: Dict[str, int] = {}
        for group in groups:
            for field in dict.fromkeys(group.get("fields") or []):
                seen[field] = seen.get(field, 0) + 1

        covered = [f for f in required_list if f in seen]
        missing = [f for f in required_list if f not in seen]
        duplicates = [f for f, count in seen.items() if count > 1 and f in required_set]
        return CoverageReport(covered=covered, missing=missing, duplicates=duplicates)

    def deduplicate_groups(self, groups: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Keep each field in the first group naming it; drop groups left empty."""
        claimed: set[str] = set()
        result: List[Dict[str, Any]] = []
        for group in groups:
            fields = []
            for field in group.get("fields") or []:
                if field in claimed:
                    continue
                claimed.add(field)
                fields.append(field)
            if fields:
                result.append({**group, "fields": fields})
        return result

    # -----------------------
    # Compilation
    # -----------------------
    def compile_plan(
        self,
        nodes: Sequence[ObjectTypeNode],
        per_object_plans: Dict[str, Dict[str, Any]],
        schema: Dict[str, Any],
    ) -> ExtractionPlan:
        """Assemble per-object results into a level-ordered plan."""
        levels: Dict[int, PlanLevel] = {}
        used_keys: set[str] = set()

        for node in sorted(nodes, key=lambda n: n.level):
            plan_level = levels.setdefault(node.level, PlanLevel(level=node.level))
            object_plan = per_object_plans.get(node.name)
            if not object_plan:
                continue

            identity_fields = list(object_plan.get("identity_fields") or [])
            skim_fields = list(object_plan.get("skim_fields") or [])
            if identity_fields:
                name = identity_group_name(node.name)
                selector_fields = list(dict.fromkeys(identity_fields + skim_fields))
                plan_level.identities.append(
                    IdentityGroup(
                        name=name,
                        object_type=node.name,
                        description=str(object_plan.get("description") or ""),
                        identity_fields=identity_fields,
                        skim_fields=skim_fields,
                        search_mode="exhaustive" if node.is_array else "skim",
                        fragment_selector=self.paths.build_selector(
                            node.path, selector_fields, schema, leaf_is_array=node.is_array
                        ),
                        key=self._unique_key(name, node.name, used_keys),
                        level=node.level,
                        parent_type=node.parent_type,
                        is_array=node.is_array,
                    )
                )

            for group in object_plan.get("extraction_groups") or []:
                fields = list(group.get("fields") or [])
                if not fields:
                    continue
                name = str(group.get("name") or DEFAULT_GROUP_NAME)
                mode = "exhaustive" if node.is_array else (group.get("search_mode") or "exhaustive")
                plan_level.remaining.append(
                    RemainingGroup(
                        name=name,
                        object_type=node.name,
                        description=str(group.get("description") or ""),
                        fields=fields,
                        search_mode=mode,
                        fragment_selector=self.paths.build_selector(
                            node.path, fields, schema, leaf_is_array=node.is_array
                        ),
                        key=self._unique_key(name, node.name, used_keys),
                        level=node.level,
                        parent_type=node.parent_type,
                        is_array=node.is_array,
                    )
                )

        plan = ExtractionPlan(levels=[levels[level] for level in sorted(levels)])
        logger.info(
            "Compiled extraction plan",
            levels=len(plan.levels),
            groups=len(plan.groups()),
        )
        return plan

    # -----------------------
    # Plan cache
    # -----------------------
    def compute_cache_key(self, schema: Dict[str, Any], runner_config: Dict[str, Any]) -> str:
        return fingerprint(schema or {}, runner_config or {})

    def get_cached_plan(self, task_definition: TaskDefinition) -> Optional[ExtractionPlan]:
        """Cached plan for the definition's current schema + config, else None."""
        cache = (task_definition.meta or {}).get(PLAN_CACHE_META_KEY)
        if not cache:
            return None

        expected_key = self.compute_cache_key(
            task_definition.schema_json, task_definition.runner_config
        )
        if cache.get("cache_key") != expected_key:
            logger.info(
                "Extraction plan cache is stale",
                task_definition_id=task_definition.id,
            )
            return None
        return ExtractionPlan.model_validate(cache.get("plan") or {})

    def cache_plan(self, task_definition: TaskDefinition, plan: ExtractionPlan) -> Dict[str, Any]:
        entry = {
            "plan": plan.model_dump(mode="json"),
            "cache_key": self.compute_cache_key(
                task_definition.schema_json, task_definition.runner_config
            ),
            "generated_at": datetime.now(UTC).isoformat(),
        }
        merge_meta(task_definition, {PLAN_CACHE_META_KEY: entry})
        logger.info("Cached extraction plan", task_definition_id=task_definition.id)
        return entry

    # -----------------------
    # Helpers
    # -----------------------
    def _request_groups(
        self, node: ObjectTypeNode, fields_to_group: Sequence[str], attempt: int
    ) -> List[Dict[str, Any]]:
        fields = {key: node.simple_fields.get(key, {}) for key in fields_to_group}
        prompt_key = "remaining_planning" if attempt == 1 else "remaining_planning_followup"
        system, user = self.prompts.render(
            prompt_key,
            {
                "object_type": node.name,
                "object_path": node.path or "(root)",
                "fields_yaml": self._fields_yaml(fields),
                "group_max_points": self.config.group_max_points,
                "attempt": attempt,
                "missing_fields": ", ".join(fields_to_group),
            },
        )
        result = self.inference.submit(
            user,
            response_schema=self._remaining_response_schema(list(fields_to_group)),
            timeout=clamp_timeout(self.config.extraction_timeout, 300),
            system=system,
        )
        if not result.completed or result.json_data is None:
            raise ValidationError(
                f"Remaining field planning failed for {node.name}: "
                f"{result.error or 'incomplete response'}"
            )

        raw_groups = result.json_data.get("extraction_groups")
        if not isinstance(raw_groups, list):
            raise ValidationError(
                f"Remaining field planning response for {node.name} has no extraction_groups"
            )

        allowed = set(fields_to_group)
        groups: List[Dict[str, Any]] = []
        for raw in raw_groups:
            if not isinstance(raw, dict):
                continue
            search_mode = raw.get("search_mode") or "exhaustive"
            if search_mode not in VALID_SEARCH_MODES:
                raise ValidationError(
                    f"Invalid search_mode '{search_mode}' for group "
                    f"'{raw.get('name') or DEFAULT_GROUP_NAME}' of {node.name}"
                )
            fields = self._known_fields(raw.get("fields"), allowed, node.name)
            groups.append(
                {
                    "name": str(raw.get("name") or DEFAULT_GROUP_NAME),
                    "description": str(raw.get("description") or ""),
                    "fields": fields,
                    "search_mode": search_mode,
                }
            )
        return groups

    def _known_fields(self, value: Any, allowed: Iterable[str], object_type: str) -> List[str]:
        allowed_set = set(allowed)
        if not isinstance(value, list):
            return []
        fields: List[str] = []
        for item in value:
            key = str(item)
            if key not in allowed_set:
                logger.warning(
                    "Ignoring unknown field {field} for {object_type}",
                    field=key,
                    object_type=object_type,
                )
                continue
            if key not in fields:
                fields.append(key)
        return fields

    def _store_object_plan(
        self, task_run: TaskRun, object_type: str, object_plan: Dict[str, Any]
    ) -> None:
        plans = dict((task_run.meta or {}).get("per_object_plans") or {})
        plans[object_type] = object_plan
        merge_meta(task_run, {"per_object_plans": plans})

    def _unique_key(self, name: str, object_type: str, used: set[str]) -> str:
        key = snake_case(name)
        if key in used:
            key = snake_case(f"{object_type} {name}")
        used.add(key)
        return key

    @staticmethod
    def _fields_yaml(fields: Dict[str, Dict[str, Any]]) -> str:
        return yaml.safe_dump({"properties": fields}, sort_keys=False).strip()

    @staticmethod
    def _identity_response_schema(field_keys: List[str]) -> Dict[str, Any]:
        field_list = {"type": "array", "items": {"type": "string", "enum": field_keys}}
        return {
            "type": "object",
            "properties": {
                "identity_fields": field_list,
                "skim_fields": field_list,
                "description": {"type": "string"},
                "reasoning": {"type": "string"},
            },
            "required": ["identity_fields", "skim_fields", "description"],
        }

    @staticmethod
    def _remaining_response_schema(field_keys: List[str]) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "extraction_groups": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "name": {"type": "string"},
                            "description": {"type": "string"},
                            "fields": {
                                "type": "array",
                                "items": {"type": "string", "enum": field_keys},
                            },
                            "search_mode": {"type": "string", "enum": list(VALID_SEARCH_MODES)},
                        },
                        "required": ["name", "fields", "search_mode"],
                    },
                }
            },
            "required": ["extraction_groups"],
        }
