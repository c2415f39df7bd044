"""Page classification against plan-derived boolean categories.

Every extraction group contributes one category (its ``key``). Each page artifact
is classified against all categories at once; results are cached on the page's
source file keyed by the SHA-256 of the canonical boolean schema, so re-running
the same schema against the same file never re-classifies it.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy.orm import Session

from docgraph.extraction.inference import InferenceService
from docgraph.extraction.models import ExtractionPlan
from docgraph.extraction.prompts import PromptLibrary
from docgraph.storage.models import (
    OPERATION_CLASSIFY,
    Artifact,
    StoredFile,
    TaskProcess,
    TaskRun,
)
from docgraph.storage.store import live_children, merge_meta, run_processes
from docgraph.utils.config import ExtractionRunnerConfig, clamp_timeout
from docgraph.utils.errors import ValidationError
from docgraph.utils.hashing import fingerprint
from docgraph.utils.text import truncate

CLASSIFICATIONS_META_KEY = "classifications"


def build_boolean_schema(plan: ExtractionPlan) -> Dict[str, Any]:
    """One required boolean property per category key."""
    categories = plan.categories()
    return {
        "type": "object",
        "properties": {
            key: {"type": "boolean", "description": description or ""}
            for key, description in categories.items()
        },
        "required": list(categories),
    }


def compute_schema_hash(schema: Dict[str, Any]) -> str:
    """SHA-256 hex digest of the canonical (sorted-key) schema JSON."""
    return fingerprint(schema)


class ClassificationEngine:
    """Creates, executes and tracks ``Classify`` processes for a run."""

    def __init__(
        self,
        session: Session,
        inference: InferenceService,
        prompts: PromptLibrary,
        config: Optional[ExtractionRunnerConfig] = None,
    ) -> None:
        self.session = session
        self.inference = inference
        self.prompts = prompts
        self.config = config or ExtractionRunnerConfig()

    # -----------------------
    # Persistent cache
    # -----------------------
    def get_cached_classification(
        self, stored_file: Optional[StoredFile], schema_hash: str
    ) -> Optional[Dict[str, bool]]:
        if stored_file is None:
            return None
        entries = (stored_file.meta or {}).get(CLASSIFICATIONS_META_KEY) or {}
        entry = entries.get(schema_hash)
        if not entry or entry.get("schema_hash") != schema_hash:
            return None
        return dict(entry.get("result") or {})

    def store_classification(
        self, stored_file: Optional[StoredFile], schema_hash: str, result: Dict[str, bool]
    ) -> None:
        """Store ``result`` for ``schema_hash``, replacing any previous entry."""
        if stored_file is None:
            return
        entries = dict((stored_file.meta or {}).get(CLASSIFICATIONS_META_KEY) or {})
        entries[schema_hash] = {
            "schema_hash": schema_hash,
            "classified_at": datetime.now(UTC).isoformat(),
            "result": dict(result),
        }
        merge_meta(stored_file, {CLASSIFICATIONS_META_KEY: entries})

    # -----------------------
    # Process creation
    # -----------------------
    def page_artifacts(self, task_run: TaskRun) -> List[Artifact]:
        if task_run.output_artifact_id is None:
            return []
        return live_children(self.session, task_run.output_artifact_id)

    def create_classify_processes(self, task_run: TaskRun, plan: ExtractionPlan) -> List[TaskProcess]:
        """Apply cached classifications and create processes for the rest."""
        boolean_schema = build_boolean_schema(plan)
        schema_hash = compute_schema_hash(boolean_schema)
        merge_meta(
            task_run,
            {"classification_schema": boolean_schema, "classification_schema_hash": schema_hash},
        )

        processes: List[TaskProcess] = []
        cache_hits = 0
        for artifact in self.page_artifacts(task_run):
            cached = self.get_cached_classification(artifact.stored_file, schema_hash)
            if cached is not None:
                merge_meta(artifact, {"classification": cached})
                cache_hits += 1
                continue

            process = TaskProcess(
                task_run_id=task_run.id,
                operation=OPERATION_CLASSIFY,
                name=truncate(f"Classify: {artifact.name}"),
                meta={"child_artifact_id": artifact.id},
            )
            process.input_artifacts.append(artifact)
            self.session.add(process)
            processes.append(process)

        self.session.flush()
        logger.info(
            "Prepared page classification",
            task_run_id=task_run.id,
            processes=len(processes),
            cache_hits=cache_hits,
        )
        return processes

    # -----------------------
    # Execution
    # -----------------------
    def execute(self, task_run: TaskRun, process: TaskProcess) -> Dict[str, bool]:
        """Classify the process's page and record the result.

        Raises:
            ValidationError: If the process has no page or inference is incomplete
        """
        artifact = self._process_artifact(process)
        boolean_schema = (task_run.meta or {}).get("classification_schema") or {}
        schema_hash = (task_run.meta or {}).get("classification_schema_hash") or compute_schema_hash(
            boolean_schema
        )
        properties = boolean_schema.get("properties") or {}

        category_lines = "\n".join(
            f"- {key}: {definition.get('description') or '(no description)'}"
            for key, definition in properties.items()
        )
        system, user = self.prompts.render(
            "classification",
            {"categories": category_lines, "page_name": artifact.name},
        )
        result = self.inference.submit(
            user,
            artifacts=[artifact],
            response_schema=boolean_schema,
            timeout=clamp_timeout(self.config.classification_timeout, 120),
            system=system,
        )
        if not result.completed or result.json_data is None:
            raise ValidationError(
                f"Classification failed for artifact {artifact.id}: "
                f"{result.error or 'incomplete response'}"
            )

        classification = {key: bool(result.json_data.get(key, False)) for key in properties}
        merge_meta(artifact, {"classification": classification})
        self.store_classification(artifact.stored_file, schema_hash, classification)

        logger.debug(
            "Classified artifact {artifact_id}",
            artifact_id=artifact.id,
            matched=[k for k, v in classification.items() if v],
        )
        return classification

    def is_classification_complete(self, task_run: TaskRun) -> bool:
        """True iff at least one Classify process exists and all have completed."""
        processes = run_processes(self.session, task_run.id, OPERATION_CLASSIFY)
        if not processes:
            return False
        return all(p.completed_at is not None for p in processes)

    def all_pages_classified(self, task_run: TaskRun) -> bool:
        """True when every page already carries a classification for the run's schema."""
        keys = list(((task_run.meta or {}).get("classification_schema") or {}).get("properties") or {})
        for page in self.page_artifacts(task_run):
            classification = (page.meta or {}).get("classification") or {}
            if any(key not in classification for key in keys):
                return False
        return True

    def artifacts_for_category(self, task_run: TaskRun, key: str) -> List[Artifact]:
        """Live page artifacts classified into ``key``."""
        return [
            artifact
            for artifact in self.page_artifacts(task_run)
            if ((artifact.meta or {}).get("classification") or {}).get(key) is True
        ]

    def _process_artifact(self, process: TaskProcess) -> Artifact:
        if process.input_artifacts:
            return process.input_artifacts[0]
        artifact_id = (process.meta or {}).get("child_artifact_id")
        artifact = self.session.get(Artifact, artifact_id) if artifact_id else None
        if artifact is None:
            raise ValidationError(f"Classify process {process.id} has no input artifact")
        return artifact
