"""Level-by-level extraction state machine.

For each plan level the orchestrator creates identity processes, waits for them,
creates remaining-field processes for every object resolved at that level, waits
for those, and then moves to the next level. Progress is kept on the run under
``meta.level_progress[level]`` so every call can pick up where the last left off.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from loguru import logger
from sqlalchemy.orm import Session

from docgraph.extraction.classification import ClassificationEngine
from docgraph.extraction.identity_resolution import resolved_ids
from docgraph.extraction.models import ExtractionPlan, IdentityGroup
from docgraph.storage.models import (
    OPERATION_EXTRACT_IDENTITY,
    OPERATION_EXTRACT_REMAINING,
    TaskProcess,
    TaskRun,
)
from docgraph.storage.store import merge_meta, run_processes
from docgraph.utils.config import ExtractionRunnerConfig
from docgraph.utils.text import key_to_title, truncate

PROGRESS_FLAGS = ("identity_created", "identity_complete", "remaining_created", "extraction_complete")


class LevelOrchestrator:
    """Creates extraction processes and advances ``current_level``."""

    def __init__(
        self,
        session: Session,
        classification: ClassificationEngine,
        config: Optional[ExtractionRunnerConfig] = None,
    ) -> None:
        self.session = session
        self.classification = classification
        self.config = config or ExtractionRunnerConfig()

    # -----------------------
    # Progress state
    # -----------------------
    def get_current_level(self, task_run: TaskRun) -> int:
        return int((task_run.meta or {}).get("current_level", 0))

    def get_level_progress(self, task_run: TaskRun, level: int) -> Dict[str, bool]:
        progress = ((task_run.meta or {}).get("level_progress") or {}).get(str(level)) or {}
        return {flag: bool(progress.get(flag, False)) for flag in PROGRESS_FLAGS}

    def update_level_progress(self, task_run: TaskRun, level: int, **flags: bool) -> Dict[str, bool]:
        all_progress = dict((task_run.meta or {}).get("level_progress") or {})
        progress = self.get_level_progress(task_run, level)
        progress.update(flags)
        all_progress[str(level)] = progress
        merge_meta(task_run, {"level_progress": all_progress})
        return progress

    def resolve_search_mode(self, group_mode: Optional[str]) -> str:
        """Apply the global search mode override to a group's own mode."""
        mode = self.config.global_search_mode
        if mode == "skim_only":
            return "skim"
        if mode == "exhaustive_only":
            return "exhaustive"
        return group_mode or "skim"

    # -----------------------
    # Identity
    # -----------------------
    def create_identity_processes(
        self, task_run: TaskRun, plan: ExtractionPlan, level: int
    ) -> List[TaskProcess]:
        """One process per identity group with classified pages.

        Groups with a parent type get one process per page, so each page's
        resolved parents scope the objects found on it.
        """
        plan_level = plan.get_level(level)
        processes: List[TaskProcess] = []
        if plan_level is None:
            return processes

        for group in plan_level.identities:
            artifacts = self.classification.artifacts_for_category(task_run, group.key)
            if not artifacts:
                logger.info(
                    "No pages classified for {group}; skipping",
                    group=group.name,
                    level=level,
                )
                continue

            parent_object_ids = (
                resolved_ids(task_run, group.parent_type, level - 1) if group.parent_type else []
            )
            batches = [[artifact] for artifact in artifacts] if group.parent_type else [artifacts]
            for batch in batches:
                process = TaskProcess(
                    task_run_id=task_run.id,
                    operation=OPERATION_EXTRACT_IDENTITY,
                    name=self._identity_process_name(group, level),
                    meta={
                        "level": level,
                        "identity_group": group.model_dump(mode="json"),
                        "parent_object_ids": parent_object_ids,
                        "search_mode": self.resolve_search_mode(group.search_mode),
                    },
                )
                process.input_artifacts.extend(batch)
                self.session.add(process)
                processes.append(process)

        self.session.flush()
        logger.info(
            "Created identity processes",
            task_run_id=task_run.id,
            level=level,
            processes=len(processes),
        )
        return processes

    def is_identity_complete_for_level(self, task_run: TaskRun, level: int) -> bool:
        """True when every identity process of ``level`` has completed (or none exist)."""
        return all(
            p.completed_at is not None
            for p in self._level_processes(task_run, OPERATION_EXTRACT_IDENTITY, level)
        )

    # -----------------------
    # Remaining
    # -----------------------
    def create_remaining_processes(
        self, task_run: TaskRun, plan: ExtractionPlan, level: int
    ) -> List[TaskProcess]:
        """One process per remaining group and object resolved at ``level``."""
        plan_level = plan.get_level(level)
        processes: List[TaskProcess] = []
        if plan_level is None:
            return processes

        for group in plan_level.remaining:
            if not group.fields:
                continue
            object_ids = resolved_ids(task_run, group.object_type, level)
            if not object_ids:
                continue
            artifacts = self.classification.artifacts_for_category(task_run, group.key)
            if not artifacts:
                continue

            for object_id in object_ids:
                process = TaskProcess(
                    task_run_id=task_run.id,
                    operation=OPERATION_EXTRACT_REMAINING,
                    name=truncate(f"Remaining L{level}: {group.name}"),
                    meta={
                        "level": level,
                        "operation": OPERATION_EXTRACT_REMAINING,
                        "extraction_group": group.model_dump(mode="json"),
                        "object_id": object_id,
                        "search_mode": self.resolve_search_mode(group.search_mode),
                    },
                )
                process.input_artifacts.extend(artifacts)
                self.session.add(process)
                processes.append(process)

        self.session.flush()
        logger.info(
            "Created remaining processes",
            task_run_id=task_run.id,
            level=level,
            processes=len(processes),
        )
        return processes

    def is_remaining_complete_for_level(self, task_run: TaskRun, level: int) -> bool:
        return all(
            p.completed_at is not None
            for p in self._level_processes(task_run, OPERATION_EXTRACT_REMAINING, level)
        )

    # -----------------------
    # Level transitions
    # -----------------------
    def advance_to_next_level(self, task_run: TaskRun, plan: ExtractionPlan) -> bool:
        """Move to the next level if the current one is done and another exists."""
        level = self.get_current_level(task_run)
        progress = self.get_level_progress(task_run, level)
        if not (progress["identity_complete"] and progress["extraction_complete"]):
            return False
        if level + 1 > plan.max_level:
            return False

        merge_meta(task_run, {"current_level": level + 1})
        logger.info("Advanced to level {level}", level=level + 1, task_run_id=task_run.id)
        return True

    def handle_level_progression(self, task_run: TaskRun, plan: ExtractionPlan) -> bool:
        """Create whatever work is due and advance levels.

        Returns:
            True once the last level is fully complete.
        """
        while True:
            level = self.get_current_level(task_run)
            progress = self.get_level_progress(task_run, level)

            if not progress["identity_created"]:
                self.create_identity_processes(task_run, plan, level)
                progress = self.update_level_progress(task_run, level, identity_created=True)

            if not progress["identity_complete"]:
                if not self.is_identity_complete_for_level(task_run, level):
                    return False
                progress = self.update_level_progress(task_run, level, identity_complete=True)

            if not progress["remaining_created"]:
                created = self.create_remaining_processes(task_run, plan, level)
                progress = self.update_level_progress(task_run, level, remaining_created=True)
                if not created:
                    progress = self.update_level_progress(task_run, level, extraction_complete=True)

            if not progress["extraction_complete"]:
                if not self.is_remaining_complete_for_level(task_run, level):
                    return False
                progress = self.update_level_progress(task_run, level, extraction_complete=True)

            if not self.advance_to_next_level(task_run, plan):
                return True

    # -----------------------
    # Helpers
    # -----------------------
    def _level_processes(self, task_run: TaskRun, operation: str, level: int) -> List[TaskProcess]:
        return [
            p
            for p in run_processes(self.session, task_run.id, operation)
            if int((p.meta or {}).get("level", -1)) == level
        ]

    @staticmethod
    def _identity_process_name(group: IdentityGroup, level: int) -> str:
        fields = ", ".join(key_to_title(f) for f in group.identity_fields)
        return truncate(f"Identity L{level}: {group.object_type} ({fields})")
