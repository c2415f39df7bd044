from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

import pytest
from sqlalchemy import func, select

from docgraph.pipeline.extraction_runner import (
    PHASE_CLASSIFICATION,
    PHASE_COMPLETE,
    PHASE_PLANNING,
    ExtractionRunner,
    SourceDocument,
)
from docgraph.storage.models import (
    OPERATION_CLASSIFY,
    OPERATION_PLAN_IDENTIFY,
    OPERATION_PLAN_REMAINING,
    ResolvedObject,
    StoredFile,
    TaskDefinition,
    TaskProcess,
    TaskRun,
)
from docgraph.storage.store import run_processes
from docgraph.utils.config import Config, DatabaseConfig
from docgraph.utils.errors import ValidationError

PROMPTS_PATH = Path(__file__).resolve().parents[2] / "config" / "extraction_prompts.yaml"


SCHEMA = {
    "type": "object",
    "title": "Claim",
    "properties": {
        "claim_number": {"type": "string"},
        "status": {"type": "string"},
        "patients": {
            "type": "array",
            "items": {
                "type": "object",
                "title": "Patient",
                "properties": {
                    "last_name": {"type": "string"},
                    "first_name": {"type": "string"},
                    "phone": {"type": "string"},
                },
            },
        },
    },
}

CLAIM_PAGE = "Claim CLM-9 is open. Injured party: Ann Lee."
CONTACT_PAGE = "Ann Lee can be reached at 555-0100."
DOCUMENT_TEXT = f"{CLAIM_PAGE}\f{CONTACT_PAGE}\f   "


def claims_responder(user: str) -> Any:
    """Answers every prompt the runner sends for the claims schema."""
    if "Choose:\n- identity_fields" in user:
        if "Object type: Claim" in user:
            return {"identity_fields": ["claim_number"], "skim_fields": [], "description": "Claim summary pages"}
        return {"identity_fields": ["last_name"], "skim_fields": ["first_name"], "description": "Pages naming a patient"}

    if "extraction_groups" in user:
        if "Object type: Claim" in user:
            return {"extraction_groups": [{"name": "Status", "fields": ["status"], "search_mode": "skim"}]}
        return {"extraction_groups": [{"name": "Contact", "fields": ["phone"], "search_mode": "skim"}]}

    if "Return one boolean per category key" in user:
        if CLAIM_PAGE in user:
            return {"claim_identification": True, "status": True, "patient_identification": True, "contact": False}
        return {"claim_identification": False, "status": False, "patient_identification": True, "contact": True}

    if "Find every Claim" in user:
        return {"claim": {"claim_number": "CLM-9", "_search_query": {"claim_number": "%CLM-9%"}}}
    if "Find every Patient" in user:
        return {"patients": [{"last_name": "Lee", "first_name": "Ann", "_search_query": [{"last_name": "%Lee%"}]}]}

    if "Pages batch" in user:
        return {"data": {"status": "open"}, "confidence": {"status": 5}}
    if "Fields to extract: phone" in user:
        return {"patients": [{"phone": "555-0100"}]}

    raise AssertionError(f"Unexpected prompt: {user[:80]}")


def _config() -> Config:
    return Config(database=DatabaseConfig(database_url="sqlite://"), prompts_path=PROMPTS_PATH)


@pytest.fixture
def runner_factory(store, scripted_inference, prompts):
    def _make(responder=claims_responder):
        inference, llm = scripted_inference(responder)
        return ExtractionRunner(_config(), store=store, inference=inference, prompts=prompts), llm

    return _make


def _count(store, model) -> int:
    with store.session() as session:
        return session.scalar(select(func.count()).select_from(model))


def test_source_document_splits_pages_on_form_feeds() -> None:
    document = SourceDocument.from_text("claim.txt", DOCUMENT_TEXT)

    assert document.pages == [CLAIM_PAGE, CONTACT_PAGE]


def test_full_run_produces_nested_rollup(store, runner_factory) -> None:
    runner, llm = runner_factory()
    definition_id = runner.create_task_definition("Claims", SCHEMA)
    run_id = runner.start_run(definition_id, [SourceDocument.from_text("claim.txt", DOCUMENT_TEXT)])

    with store.session() as session:
        task_run = session.get(TaskRun, run_id)
        assert task_run.meta["phase"] == PHASE_PLANNING
        assert [p.name for p in run_processes(session, run_id)] == [
            "Plan Identity: Claim",
            "Plan Identity: Patient",
        ]

    result = runner.run_until_idle(run_id)

    assert result.completed is True
    assert result.phase == PHASE_COMPLETE
    assert result.processes_run == 11
    [claim] = result.rollup["objects"]
    assert claim["claim_number"] == "CLM-9"
    assert claim["status"] == "open"
    assert claim["patients"] == [
        {
            "id": claim["patients"][0]["id"],
            "type": "Patient",
            "name": "Lee",
            "last_name": "Lee",
            "first_name": "Ann",
            "phone": "555-0100",
        }
    ]
    assert result.rollup["summary"] == {"total_objects": 2, "by_type": {"Claim": 1, "Patient": 1}}
    assert runner.stats["processes_completed"] == 11
    assert runner.stats["runs_completed"] == 1

    with store.session() as session:
        task_run = session.get(TaskRun, run_id)
        assert task_run.completed_at is not None
        assert task_run.meta["level_progress"]["1"]["extraction_complete"] is True
        assert len(run_processes(session, run_id, OPERATION_PLAN_REMAINING)) == 2
        definition = session.get(TaskDefinition, definition_id)
        assert "extraction_plan_cache" in definition.meta

    # Pages plus the document itself.
    assert _count(store, StoredFile) == 3


def test_second_run_reuses_plan_and_classification(store, runner_factory) -> None:
    runner, llm = runner_factory()
    definition_id = runner.create_task_definition("Claims", SCHEMA)
    documents = [SourceDocument.from_text("claim.txt", DOCUMENT_TEXT)]
    runner.run_until_idle(runner.start_run(definition_id, documents))
    first_run_calls = len(llm.calls)

    second_run_id = runner.start_run(definition_id, documents)
    result = runner.run_until_idle(second_run_id)

    assert result.completed is True
    second_run_calls = llm.calls[first_run_calls:]
    assert not any("Choose:" in call or "Return one boolean" in call for call in second_run_calls)
    assert len(second_run_calls) == 5
    with store.session() as session:
        task_run = session.get(TaskRun, second_run_id)
        assert task_run.meta["plan_cache_hit"] is True
        assert run_processes(session, second_run_id, OPERATION_PLAN_IDENTIFY) == []
        assert run_processes(session, second_run_id, OPERATION_CLASSIFY) == []

    # Existing objects are matched rather than duplicated.
    assert _count(store, ResolvedObject) == 2
    assert _count(store, StoredFile) == 3
    assert result.rollup["objects"][0]["claim_number"] == "CLM-9"


def test_changed_runner_config_invalidates_the_plan(store, runner_factory) -> None:
    runner, llm = runner_factory()
    documents = [SourceDocument.from_text("claim.txt", DOCUMENT_TEXT)]
    first_id = runner.create_task_definition("Claims", SCHEMA)
    runner.run_until_idle(runner.start_run(first_id, documents))

    with store.session() as session:
        definition = session.get(TaskDefinition, first_id)
        definition.runner_config = {**definition.runner_config, "skim_batch_size": 1}

    run_id = runner.start_run(first_id, documents)

    with store.session() as session:
        task_run = session.get(TaskRun, run_id)
        assert task_run.meta["plan_cache_hit"] is False
        assert task_run.meta["phase"] == PHASE_PLANNING


def test_failed_process_is_recorded(store, runner_factory) -> None:
    def responder(user: str) -> Any:
        if "Object type: Patient" in user:
            return "I am not sure"
        return claims_responder(user)

    runner, _ = runner_factory(responder)
    definition_id = runner.create_task_definition("Claims", SCHEMA)
    run_id = runner.start_run(definition_id, [SourceDocument.from_text("claim.txt", DOCUMENT_TEXT)])

    assert runner.step(run_id) is True
    with pytest.raises(ValidationError, match="Identity planning failed for Patient"):
        runner.step(run_id)

    with store.session() as session:
        failed = [p for p in run_processes(session, run_id) if p.failed_at is not None]
        assert [p.name for p in failed] == ["Plan Identity: Patient"]
        assert "Identity planning failed" in failed[0].meta["error"]
        assert failed[0].meta["object_type"] == "Patient"
        assert runner.pending_processes(session, run_id) == []
    assert runner.stats["processes_failed"] == 1
    # Nothing else can run; the run stays in planning.
    assert runner.run_until_idle(run_id).phase == PHASE_PLANNING


def test_failed_grouping_keeps_attempt_history(store, runner_factory) -> None:
    def responder(user: str) -> Any:
        if "extraction_groups" in user and "Object type: Patient" in user:
            return {"extraction_groups": []}
        return claims_responder(user)

    runner, _ = runner_factory(responder)
    definition_id = runner.create_task_definition("Claims", SCHEMA)
    run_id = runner.start_run(definition_id, [SourceDocument.from_text("claim.txt", DOCUMENT_TEXT)])

    with pytest.raises(ValidationError, match="Failed to cover all fields after 3 attempts for Patient"):
        runner.run_until_idle(run_id)

    with store.session() as session:
        [failed] = [p for p in run_processes(session, run_id) if p.failed_at is not None]
        assert failed.operation == OPERATION_PLAN_REMAINING
        assert failed.meta["total_attempts"] == 3
        assert [h["missing_fields"] for h in failed.meta["attempt_history"]] == [["phone"]] * 3


def test_cached_plan_goes_straight_to_classification(store, runner_factory) -> None:
    runner, _ = runner_factory()
    definition_id = runner.create_task_definition("Claims", SCHEMA)
    runner.run_until_idle(runner.start_run(definition_id, [SourceDocument.from_text("a.txt", CLAIM_PAGE)]))

    run_id = runner.start_run(definition_id, [SourceDocument.from_text("b.txt", CONTACT_PAGE)])

    with store.session() as session:
        task_run = session.get(TaskRun, run_id)
        assert task_run.meta["phase"] == PHASE_CLASSIFICATION
        processes = run_processes(session, run_id)
        assert [p.operation for p in processes] == [OPERATION_CLASSIFY]
        assert isinstance(processes[0], TaskProcess)


def test_unknown_definition_is_rejected(runner_factory) -> None:
    runner, _ = runner_factory()

    with pytest.raises(ValidationError, match="Task definition 999 not found"):
        runner.start_run(999, [])


def test_schema_without_object_types_is_rejected(store, runner_factory) -> None:
    runner, llm = runner_factory()
    definition_id = runner.create_task_definition("Tags", {"type": "array", "items": {"type": "string"}})

    with pytest.raises(ValidationError, match="has no object types"):
        runner.start_run(definition_id, [SourceDocument.from_text("claim.txt", DOCUMENT_TEXT)])

    assert llm.calls == []
    assert _count(store, TaskRun) == 0


def _rollup_ids(rollup: Dict[str, Any]) -> list:
    return [obj["id"] for obj in rollup["objects"]]


def test_rollup_is_stable_across_reruns(store, runner_factory) -> None:
    runner, _ = runner_factory()
    definition_id = runner.create_task_definition("Claims", SCHEMA)
    documents = [SourceDocument.from_text("claim.txt", DOCUMENT_TEXT)]

    first = runner.run_until_idle(runner.start_run(definition_id, documents))
    second = runner.run_until_idle(runner.start_run(definition_id, documents))

    assert _rollup_ids(first.rollup) == _rollup_ids(second.rollup)
