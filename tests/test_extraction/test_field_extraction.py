from __future__ import annotations

from typing import Any, List

import pytest

from docgraph.extraction.field_extraction import FieldExtractionEngine, batched, drop_nulls
from docgraph.extraction.fragment_selector import FragmentPathResolver
from docgraph.extraction.models import FieldConflict, FieldExtractionResult, RemainingGroup
from docgraph.extraction.objects import ObjectWriter, candidate_data
from docgraph.storage.models import OPERATION_EXTRACT_REMAINING, TaskProcess
from docgraph.storage.store import live_children
from docgraph.utils.config import ExtractionRunnerConfig
from docgraph.utils.errors import ValidationError

SCHEMA = {
    "type": "object",
    "title": "Claim",
    "properties": {
        "claim_number": {"type": "string"},
        "patients": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "last_name": {"type": "string"},
                    "phone": {"type": "string", "description": "Primary phone"},
                    "city": {"type": "string"},
                    "admitted_on": {"type": "string", "format": "date"},
                },
            },
        },
    },
}


def _group(fields: List[str], search_mode: str) -> RemainingGroup:
    return RemainingGroup(
        name="Contact",
        object_type="Patient",
        key="contact",
        fields=fields,
        search_mode=search_mode,
        fragment_selector=FragmentPathResolver().build_selector(
            "patients", fields, SCHEMA, leaf_is_array=True
        ),
        level=1,
        parent_type="Claim",
        is_array=True,
    )


@pytest.fixture
def patient(session):
    writer = ObjectWriter(session, schema=SCHEMA)
    claim = writer.create("Claim", {"name": "CLM-1"})
    patient = writer.create("Patient", {"name": "Lee", "last_name": "Lee"}, root_object_id=claim.id)
    writer.ensure_relationship(claim.id, patient.id, "patients")
    return patient


def _process(session, task_run, group: RemainingGroup, object_id: Any, pages) -> TaskProcess:
    process = TaskProcess(
        task_run_id=task_run.id,
        operation=OPERATION_EXTRACT_REMAINING,
        name="Extract: Contact",
        meta={
            "extraction_group": group.model_dump(mode="json"),
            "object_id": object_id,
            "level": 1,
            "search_mode": group.search_mode,
        },
    )
    process.input_artifacts.extend(pages)
    session.add(process)
    session.flush()
    return process


def test_exhaustive_extraction_saves_fields(
    session, scripted_inference, prompts, make_run, patient
) -> None:
    task_run = make_run(SCHEMA, ["Lee can be reached at 555-0100", "Admitted 03/04/2021"])
    group = _group(["phone", "city", "admitted_on"], "exhaustive")
    process = _process(session, task_run, group, patient.id, live_children(session, task_run.output_artifact_id))
    inference, llm = scripted_inference(
        lambda _user: {
            "patients": [{"phone": "555-0100", "city": None, "admitted_on": "03/04/2021"}],
            "page_sources": {"phone": 1, "admitted_on": "2", "city": 1},
        }
    )

    data = FieldExtractionEngine(session, inference, prompts).execute(task_run, process)

    assert data == {"phone": "555-0100", "admitted_on": "03/04/2021"}
    stored = candidate_data(patient)
    assert stored["phone"] == "555-0100"
    assert stored["admitted_on"] == "2021-03-04"
    assert "city" not in stored
    assert len(llm.calls) == 1
    assert "Fields to extract: phone, city, admitted_on" in llm.calls[0]
    assert '"last_name": "Lee"' in llm.calls[0]

    [artifact] = process.output_artifacts
    assert artifact.json_content == {"id": patient.id, "type": "Patient", **data}
    assert artifact.meta["operation"] == OPERATION_EXTRACT_REMAINING
    assert artifact.meta["parent_type"] == "Claim"
    assert artifact.meta["relationship_key"] == "patients"
    assert artifact.meta["extraction_mode"] == "exhaustive"
    assert artifact.meta["is_array_type"] is True
    assert artifact.meta["page_sources"] == {"phone": 1, "admitted_on": 2}
    assert '"page_sources"' in llm.calls[0]


def test_skim_stops_once_every_field_is_confident(
    session, scripted_inference, prompts, make_run, patient
) -> None:
    task_run = make_run(SCHEMA, ["page one", "page two", "page three"])
    group = _group(["phone", "city"], "skim")
    process = _process(session, task_run, group, patient.id, live_children(session, task_run.output_artifact_id))

    def respond(user: str) -> dict:
        if "Pages batch 1 of 3" in user:
            return {"data": {"phone": "555-0100", "city": None}, "confidence": {"phone": 4, "city": 5}}
        return {"data": {"city": "Austin"}, "confidence": {"city": 9}}

    inference, llm = scripted_inference(respond)
    engine = FieldExtractionEngine(
        session, inference, prompts, ExtractionRunnerConfig(skim_batch_size=1, confidence_threshold=3)
    )

    data = engine.execute(task_run, process)

    assert data == {"phone": "555-0100", "city": "Austin"}
    assert len(llm.calls) == 2
    assert "page one" in llm.calls[0] and "page two" not in llm.calls[0]


def test_skim_reads_every_batch_when_unsure(session, scripted_inference, prompts, make_run, patient) -> None:
    task_run = make_run(SCHEMA, ["a", "b", "c"])
    group = _group(["phone"], "skim")
    process = _process(session, task_run, group, patient.id, live_children(session, task_run.output_artifact_id))
    inference, llm = scripted_inference(
        lambda _user: {"data": {"phone": "555"}, "confidence": {"phone": 1}}
    )
    engine = FieldExtractionEngine(
        session, inference, prompts, ExtractionRunnerConfig(skim_batch_size=2, confidence_threshold=4)
    )

    assert engine.execute(task_run, process) == {"phone": "555"}
    assert len(llm.calls) == 2


def test_merge_keeps_the_more_confident_value() -> None:
    merge = FieldExtractionEngine.merge_skim_results
    start = FieldExtractionResult(data={"city": "Austin"}, confidence={"city": 4}, page_sources={"city": 1})

    state = merge(start, {"city": "Dallas", "phone": "555"}, {"city": 3, "phone": 2}, {"city": 2, "phone": 2})
    assert state.data == {"city": "Austin", "phone": "555"}
    assert state.confidence == {"city": 4, "phone": 2}
    assert state.page_sources == {"city": 1, "phone": 2}
    assert state.conflicts == []

    state = merge(state, {"city": "Houston"}, {"city": 5}, {"city": 3})
    assert state.data["city"] == "Houston"
    assert state.confidence["city"] == 5
    assert state.page_sources["city"] == 3


def test_equally_confident_disagreement_is_held_as_a_conflict() -> None:
    merge = FieldExtractionEngine.merge_skim_results
    start = FieldExtractionResult(data={"city": "Austin"}, confidence={"city": 4}, page_sources={"city": 1})

    same = merge(start, {"city": "  AUSTIN "}, {"city": 4}, {"city": 2})
    assert same.conflicts == []
    assert same.page_sources == {"city": 1}

    state = merge(start, {"city": "Houston"}, {"city": 4}, {"city": 3})
    assert state.data == {"city": "Austin"}
    assert state.conflicts == [
        FieldConflict(field_name="city", existing_value="Austin", new_value="Houston", existing_page=1, new_page=3)
    ]
    assert start.conflicts == []

    # A more confident value settles the field outright.
    state = merge(state, {"city": "Dallas"}, {"city": 5})
    assert state.data["city"] == "Dallas"
    assert state.conflicts == []
    assert "city" not in state.page_sources


def _conflicting_cities(resolution: Any):
    def respond(user: str) -> Any:
        if "Different pages gave different values" in user:
            return resolution
        if "Pages batch 1 of 3" in user:
            return {"data": {"city": "Austin"}, "confidence": {"city": 4}, "page_sources": {"city": 1}}
        if "Pages batch 2 of 3" in user:
            return {"data": {"city": "Dallas"}, "confidence": {"city": 4}, "page_sources": {"city": 2}}
        return {"data": {"city": None}, "confidence": {}}

    return respond


def test_skim_conflict_is_resolved_over_the_conflicting_pages(
    session, scripted_inference, prompts, make_run, patient
) -> None:
    task_run = make_run(SCHEMA, ["Lee lives in Austin", "Lee moved to Dallas last May", "Billing summary"])
    group = _group(["city"], "skim")
    process = _process(session, task_run, group, patient.id, live_children(session, task_run.output_artifact_id))
    inference, llm = scripted_inference(
        _conflicting_cities({"city": {"resolved_value": "Dallas", "source_page": 2}})
    )
    engine = FieldExtractionEngine(
        session, inference, prompts, ExtractionRunnerConfig(skim_batch_size=1, confidence_threshold=5)
    )

    assert engine.execute(task_run, process) == {"city": "Dallas"}

    assert len(llm.calls) == 4
    resolution_call = llm.calls[-1]
    assert "option_a" in resolution_call and "value: Austin" in resolution_call
    assert "Lee lives in Austin" in resolution_call and "Lee moved to Dallas" in resolution_call
    assert "Billing summary" not in resolution_call
    assert candidate_data(patient)["city"] == "Dallas"

    [artifact] = process.output_artifacts
    assert artifact.meta["page_sources"] == {"city": 2}
    assert artifact.meta["resolved_conflicts"] == ["city"]


def test_incomplete_conflict_resolution_keeps_first_value(
    session, scripted_inference, prompts, make_run, patient
) -> None:
    task_run = make_run(SCHEMA, ["Lee lives in Austin", "Lee moved to Dallas last May", "Billing summary"])
    group = _group(["city"], "skim")
    process = _process(session, task_run, group, patient.id, live_children(session, task_run.output_artifact_id))
    inference, llm = scripted_inference(_conflicting_cities(TimeoutError("slow")))
    engine = FieldExtractionEngine(
        session, inference, prompts, ExtractionRunnerConfig(skim_batch_size=1, confidence_threshold=5)
    )

    assert engine.execute(task_run, process) == {"city": "Austin"}

    assert len(llm.calls) == 4
    [artifact] = process.output_artifacts
    assert artifact.meta["page_sources"] == {"city": 1}
    assert artifact.meta["resolved_conflicts"] == []


def test_empty_answer_writes_nothing(session, scripted_inference, prompts, make_run, patient) -> None:
    task_run = make_run(SCHEMA, ["nothing here"])
    group = _group(["phone"], "exhaustive")
    process = _process(session, task_run, group, patient.id, live_children(session, task_run.output_artifact_id))
    inference, _ = scripted_inference(lambda _user: {"patients": [{"phone": None}]})

    assert FieldExtractionEngine(session, inference, prompts).execute(task_run, process) == {}
    assert process.output_artifacts == []


def test_missing_object_is_skipped(session, scripted_inference, prompts, make_run) -> None:
    task_run = make_run(SCHEMA, ["page"])
    process = _process(
        session, task_run, _group(["phone"], "exhaustive"), 404, live_children(session, task_run.output_artifact_id)
    )
    inference, llm = scripted_inference(lambda _user: {})

    assert FieldExtractionEngine(session, inference, prompts).execute(task_run, process) == {}
    assert llm.calls == []


def test_process_without_pages_is_rejected(session, scripted_inference, prompts, make_run, patient) -> None:
    task_run = make_run(SCHEMA)
    process = _process(session, task_run, _group(["phone"], "exhaustive"), patient.id, [])
    inference, _ = scripted_inference(lambda _user: {})

    with pytest.raises(ValidationError, match="has no input artifacts"):
        FieldExtractionEngine(session, inference, prompts).execute(task_run, process)


def test_helpers() -> None:
    assert drop_nulls({"a": None, "b": 0, "c": ""}) == {"b": 0, "c": ""}
    assert batched([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
    assert batched([1, 2], 0) == [[1], [2]]
