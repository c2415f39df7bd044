"""End-to-end extraction runner.

Drives one task run through its phases:

1. planning: one ``Plan: Identify`` process per object type, then one
   ``Plan: Remaining`` process per type with fields left to group; the results
   are compiled into an extraction plan and cached on the task definition
2. classification: one ``Classify`` process per page without a cached result
3. extraction: level-by-level identity and remaining-field processes
4. complete: the rollup has been written to the run's output artifact

Every process is executed in its own unit of work. After each one the runner
decides what the run needs next, so a run can be resumed from the store at any
point.
"""

from __future__ import annotations

from datetime import UTC, datetime
from types import TracebackType
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from docgraph.extraction.classification import ClassificationEngine
from docgraph.extraction.field_extraction import FieldExtractionEngine
from docgraph.extraction.identity_resolution import IdentityResolutionEngine
from docgraph.extraction.inference import InferenceService
from docgraph.extraction.models import ExtractionPlan, ObjectTypeNode
from docgraph.extraction.planning import ExtractionPlanningEngine, node_meta
from docgraph.extraction.prompts import PromptLibrary
from docgraph.extraction.rollup import RollupEngine
from docgraph.extraction.schema_hierarchy import SchemaHierarchyExtractor
from docgraph.pipeline.level_orchestrator import LevelOrchestrator
from docgraph.storage.models import (
    OPERATION_CLASSIFY,
    OPERATION_EXTRACT_IDENTITY,
    OPERATION_EXTRACT_REMAINING,
    OPERATION_PLAN_IDENTIFY,
    OPERATION_PLAN_REMAINING,
    Artifact,
    StoredFile,
    TaskDefinition,
    TaskProcess,
    TaskRun,
)
from docgraph.storage.store import ExtractionStore, merge_meta, run_processes
from docgraph.utils.config import Config, ExtractionRunnerConfig
from docgraph.utils.errors import ValidationError
from docgraph.utils.hashing import sha256_hex
from docgraph.utils.text import truncate

PHASE_PLANNING = "planning"
PHASE_CLASSIFICATION = "classification"
PHASE_EXTRACTION = "extraction"
PHASE_COMPLETE = "complete"

PAGE_SEPARATOR = "\f"


class SourceDocument(BaseModel):
    """A source document already split into page texts."""

    filename: str
    pages: List[str] = Field(default_factory=list)

    @classmethod
    def from_text(cls, filename: str, text: str) -> "SourceDocument":
        """Split ``text`` into pages on form feeds."""
        pages = [page.strip() for page in text.split(PAGE_SEPARATOR)]
        return cls(filename=filename, pages=[page for page in pages if page])


class RunResult(BaseModel):
    """Outcome of driving a run until no work is left."""

    task_run_id: int
    phase: Optional[str] = None
    processes_run: int = 0
    completed: bool = False
    rollup: Optional[Dict[str, Any]] = None


class ExtractionRunner:
    """Creates task runs and executes their processes.

    Example:
        >>> runner = ExtractionRunner(config)
        >>> definition_id = runner.create_task_definition("Claims", schema)
        >>> run_id = runner.start_run(definition_id, [SourceDocument.from_text("a.txt", text)])
        >>> result = runner.run_until_idle(run_id)
    """

    def __init__(
        self,
        config: Config,
        *,
        store: Optional[ExtractionStore] = None,
        inference: Optional[InferenceService] = None,
        prompts: Optional[PromptLibrary] = None,
    ) -> None:
        self.config = config
        self.store = store or ExtractionStore(config.database)
        self.inference = inference or InferenceService(config.llm)
        self.prompts = prompts or PromptLibrary(config.prompts_path)
        self._owns_store = store is None

        self.stats = {
            "processes_completed": 0,
            "processes_failed": 0,
            "runs_completed": 0,
        }

        if self._owns_store:
            self.store.connect()
            self.store.create_schema()

        logger.info("ExtractionRunner initialized")

    # -----------------------
    # Public API
    # -----------------------
    def create_task_definition(
        self,
        name: str,
        schema: Dict[str, Any],
        *,
        schema_name: Optional[str] = None,
        schema_definition_id: Optional[int] = None,
        runner_config: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Store a task definition; the runner config defaults to the loaded one."""
        with self.store.session() as session:
            definition = TaskDefinition(
                team_id=self.config.team_id,
                name=name,
                schema_name=schema_name,
                schema_definition_id=schema_definition_id,
                schema_json=schema,
                runner_config=runner_config or self.config.extraction.fingerprint_payload(),
                meta={},
            )
            session.add(definition)
            session.flush()
            logger.info("Created task definition {name}", name=name, task_definition_id=definition.id)
            return definition.id

    def start_run(self, task_definition_id: int, documents: Sequence[SourceDocument]) -> int:
        """Create a run with one page artifact per document page and plan it."""
        with self.store.session() as session:
            definition = session.get(TaskDefinition, task_definition_id)
            if definition is None:
                raise ValidationError(f"Task definition {task_definition_id} not found")

            task_run = TaskRun(
                task_definition=definition,
                meta={},
                started_at=datetime.now(UTC),
            )
            session.add(task_run)
            session.flush()

            output = Artifact(task_run_id=task_run.id, name=truncate(f"Extraction Output: {definition.name}"))
            session.add(output)
            session.flush()
            task_run.output_artifact = output

            position = 0
            for document in documents:
                source = self._get_or_create_file(
                    session, document.filename, sha256_hex(PAGE_SEPARATOR.join(document.pages))
                )
                for page_number, text in enumerate(document.pages, start=1):
                    position += 1
                    page_file = self._get_or_create_file(
                        session,
                        f"{document.filename}#page={page_number}",
                        sha256_hex(text),
                        original=source,
                        page_number=page_number,
                    )
                    session.add(
                        Artifact(
                            task_run_id=task_run.id,
                            parent_artifact_id=output.id,
                            stored_file=page_file,
                            name=truncate(f"{document.filename} - Page {page_number}"),
                            position=position,
                            text_content=text,
                        )
                    )
            session.flush()

            logger.info(
                "Started task run {task_run_id}",
                task_run_id=task_run.id,
                documents=len(documents),
                pages=position,
            )
            self.initialize(session, task_run)
            return task_run.id

    def initialize(self, session: Session, task_run: TaskRun) -> None:
        """Use the cached plan when it is still valid, else create planning processes."""
        definition = task_run.task_definition
        planning = self._planning_engine(task_run)
        plan = planning.get_cached_plan(definition)
        if plan is not None:
            logger.info("Using cached extraction plan", task_run_id=task_run.id)
            merge_meta(task_run, {"plan_cache_hit": True})
            self._start_classification(session, task_run, plan)
            return

        nodes = SchemaHierarchyExtractor().extract(
            definition.schema_json or {}, definition.schema_name
        )
        if not nodes:
            raise ValidationError(f"Schema of task definition {definition.id} has no object types")
        merge_meta(
            task_run,
            {
                "phase": PHASE_PLANNING,
                "plan_cache_hit": False,
                "object_hierarchy": [node.model_dump(mode="json") for node in nodes],
            },
        )
        for node in nodes:
            process = TaskProcess(
                task_run_id=task_run.id,
                operation=OPERATION_PLAN_IDENTIFY,
                name=truncate(f"Plan Identity: {node.name}"),
                meta=node_meta(node),
            )
            session.add(process)
        session.flush()
        logger.info(
            "Created planning processes",
            task_run_id=task_run.id,
            object_types=len(nodes),
        )

    def pending_processes(self, session: Session, task_run_id: int) -> List[TaskProcess]:
        return [
            p
            for p in run_processes(session, task_run_id)
            if p.completed_at is None and p.failed_at is None
        ]

    def run_process(self, task_run_id: int, process_id: int) -> Any:
        """Execute one process and advance the run.

        A failing process is marked ``failed_at`` with the error in its meta, and
        the error is re-raised.
        """
        # Meta written by the failing process survives the rollback.
        failure_meta: Dict[str, Any] = {}
        try:
            with self.store.session() as session:
                task_run = session.get(TaskRun, task_run_id)
                process = session.get(TaskProcess, process_id)
                if task_run is None or process is None:
                    raise ValidationError(f"Process {process_id} of run {task_run_id} not found")

                process.started_at = datetime.now(UTC)
                try:
                    result = self._dispatch(session, task_run, process)
                except Exception:
                    failure_meta = dict(process.meta or {})
                    raise
                process.completed_at = datetime.now(UTC)
                session.flush()
                self.stats["processes_completed"] += 1

                self.after_process(session, task_run)
                return result
        except Exception as exc:
            self.stats["processes_failed"] += 1
            self._record_failure(process_id, exc, failure_meta)
            raise

    def step(self, task_run_id: int) -> bool:
        """Run the next pending process; False when nothing is pending."""
        with self.store.session() as session:
            pending = self.pending_processes(session, task_run_id)
            if not pending:
                return False
            process_id = pending[0].id
        self.run_process(task_run_id, process_id)
        return True

    def run_until_idle(self, task_run_id: int, max_steps: int = 10_000) -> RunResult:
        """Execute pending processes in creation order until none remain."""
        processes_run = 0
        while processes_run < max_steps and self.step(task_run_id):
            processes_run += 1

        with self.store.session() as session:
            task_run = session.get(TaskRun, task_run_id)
            if task_run is None:
                raise ValidationError(f"Task run {task_run_id} not found")
            phase = (task_run.meta or {}).get("phase")
            output = task_run.output_artifact
            return RunResult(
                task_run_id=task_run_id,
                phase=phase,
                processes_run=processes_run,
                completed=phase == PHASE_COMPLETE,
                rollup=output.json_content if output is not None else None,
            )

    def after_process(self, session: Session, task_run: TaskRun) -> None:
        """Move the run forward after a process completed."""
        phase = (task_run.meta or {}).get("phase")
        if phase == PHASE_PLANNING:
            self._advance_planning(session, task_run)
        elif phase == PHASE_CLASSIFICATION:
            self._advance_classification(session, task_run)
        elif phase == PHASE_EXTRACTION:
            self._advance_extraction(session, task_run)

    def close(self) -> None:
        if self._owns_store:
            self.store.close()
        logger.info("ExtractionRunner closed", **self.stats)

    def __enter__(self) -> "ExtractionRunner":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # -----------------------
    # Phase transitions
    # -----------------------
    def _advance_planning(self, session: Session, task_run: TaskRun) -> None:
        identify = run_processes(session, task_run.id, OPERATION_PLAN_IDENTIFY)
        remaining = run_processes(session, task_run.id, OPERATION_PLAN_REMAINING)
        if any(p.completed_at is None for p in identify + remaining):
            return

        planned_types = {(p.meta or {}).get("object_type") for p in remaining}
        per_object_plans = (task_run.meta or {}).get("per_object_plans") or {}
        created = 0
        for process in identify:
            meta = process.meta or {}
            object_type = meta.get("object_type")
            if not meta.get("has_remaining_fields") or object_type in planned_types:
                continue
            object_plan = per_object_plans.get(object_type) or {}
            session.add(
                TaskProcess(
                    task_run_id=task_run.id,
                    operation=OPERATION_PLAN_REMAINING,
                    name=truncate(f"Plan Remaining: {object_type}"),
                    meta={
                        **{k: v for k, v in meta.items() if k != "has_remaining_fields"},
                        "remaining_fields": list(object_plan.get("remaining_fields") or []),
                    },
                )
            )
            created += 1
        if created:
            session.flush()
            logger.info("Created remaining planning processes", task_run_id=task_run.id, processes=created)
            return

        definition = task_run.task_definition
        nodes = [
            ObjectTypeNode.model_validate(node)
            for node in (task_run.meta or {}).get("object_hierarchy") or []
        ]
        planning = self._planning_engine(task_run)
        plan = planning.compile_plan(nodes, per_object_plans, definition.schema_json or {})
        planning.cache_plan(definition, plan)
        self._start_classification(session, task_run, plan)

    def _start_classification(self, session: Session, task_run: TaskRun, plan: ExtractionPlan) -> None:
        merge_meta(
            task_run,
            {
                "phase": PHASE_CLASSIFICATION,
                "extraction_plan": plan.model_dump(mode="json"),
                "current_level": 0,
                "level_progress": {},
                "resolved_objects": {},
            },
        )
        self._classification_engine(session, task_run).create_classify_processes(task_run, plan)
        self._advance_classification(session, task_run)

    def _advance_classification(self, session: Session, task_run: TaskRun) -> None:
        classification = self._classification_engine(session, task_run)
        ready = classification.is_classification_complete(task_run) or (
            not run_processes(session, task_run.id, OPERATION_CLASSIFY)
            and classification.all_pages_classified(task_run)
        )
        if not ready:
            return
        merge_meta(task_run, {"phase": PHASE_EXTRACTION})
        logger.info("Classification complete", task_run_id=task_run.id)
        self._advance_extraction(session, task_run)

    def _advance_extraction(self, session: Session, task_run: TaskRun) -> None:
        plan = self._run_plan(task_run)
        orchestrator = LevelOrchestrator(
            session, self._classification_engine(session, task_run), self._runner_config(task_run)
        )
        if not orchestrator.handle_level_progression(task_run, plan):
            return

        RollupEngine(session).rollup(task_run)
        merge_meta(task_run, {"phase": PHASE_COMPLETE})
        task_run.completed_at = datetime.now(UTC)
        self.stats["runs_completed"] += 1
        logger.info("Task run {task_run_id} complete", task_run_id=task_run.id)

    # -----------------------
    # Helpers
    # -----------------------
    def _dispatch(self, session: Session, task_run: TaskRun, process: TaskProcess) -> Any:
        logger.debug(
            "Running process {name}",
            name=process.name,
            operation=process.operation,
            task_process_id=process.id,
        )
        if process.operation == OPERATION_PLAN_IDENTIFY:
            return self._planning_engine(task_run).execute_identify(task_run, process)
        if process.operation == OPERATION_PLAN_REMAINING:
            return self._planning_engine(task_run).execute_remaining(task_run, process)
        if process.operation == OPERATION_CLASSIFY:
            return self._classification_engine(session, task_run).execute(task_run, process)
        if process.operation == OPERATION_EXTRACT_IDENTITY:
            return IdentityResolutionEngine(
                session, self.inference, self.prompts, self._runner_config(task_run)
            ).execute(task_run, process)
        if process.operation == OPERATION_EXTRACT_REMAINING:
            return FieldExtractionEngine(
                session, self.inference, self.prompts, self._runner_config(task_run)
            ).execute(task_run, process)
        raise ValidationError(f"Unknown operation '{process.operation}' for process {process.id}")

    def _record_failure(self, process_id: int, exc: Exception, meta: Dict[str, Any]) -> None:
        with self.store.session() as session:
            process = session.get(TaskProcess, process_id)
            if process is None:
                return
            process.failed_at = datetime.now(UTC)
            merge_meta(process, {**meta, "error": str(exc)})
        logger.error(
            "Process {task_process_id} failed: {error}",
            task_process_id=process_id,
            error=str(exc),
        )

    def _runner_config(self, task_run: TaskRun) -> ExtractionRunnerConfig:
        overrides = task_run.task_definition.runner_config or {}
        return ExtractionRunnerConfig(**{**self.config.extraction.model_dump(), **overrides})

    def _planning_engine(self, task_run: TaskRun) -> ExtractionPlanningEngine:
        return ExtractionPlanningEngine(self.inference, self.prompts, self._runner_config(task_run))

    def _classification_engine(self, session: Session, task_run: TaskRun) -> ClassificationEngine:
        return ClassificationEngine(session, self.inference, self.prompts, self._runner_config(task_run))

    @staticmethod
    def _run_plan(task_run: TaskRun) -> ExtractionPlan:
        data = (task_run.meta or {}).get("extraction_plan")
        if data is None:
            raise ValidationError(f"Task run {task_run.id} has no extraction plan")
        return ExtractionPlan.model_validate(data)

    @staticmethod
    def _get_or_create_file(
        session: Session,
        filename: str,
        sha256: str,
        *,
        original: Optional[StoredFile] = None,
        page_number: Optional[int] = None,
    ) -> StoredFile:
        """Reuse a stored file with the same name and content so its caches apply."""
        stmt = select(StoredFile).where(StoredFile.filename == filename, StoredFile.sha256 == sha256)
        if original is not None:
            stmt = stmt.where(StoredFile.original_stored_file_id == original.id)
        else:
            stmt = stmt.where(StoredFile.original_stored_file_id.is_(None))
        stored = session.scalars(stmt.order_by(StoredFile.id)).first()
        if stored is None:
            stored = StoredFile(
                filename=filename,
                sha256=sha256,
                original_stored_file_id=original.id if original is not None else None,
                page_number=page_number,
                meta={},
            )
            session.add(stored)
            session.flush()
        return stored
