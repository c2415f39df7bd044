from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Sequence

import pytest
from sqlalchemy.orm import Session

from docgraph.extraction.inference import InferenceService
from docgraph.extraction.prompts import PromptLibrary
from docgraph.storage.models import Artifact, StoredFile, TaskDefinition, TaskRun
from docgraph.storage.store import ExtractionStore
from docgraph.utils.config import DatabaseConfig, LLMConfig
from docgraph.utils.hashing import sha256_hex

PROMPTS_PATH = Path(__file__).resolve().parents[1] / "config" / "extraction_prompts.yaml"


def _noop_sleep(_: float) -> None:
    return None


class ScriptedLLM:
    """Replaces the provider call; ``responder`` maps the user message to an answer."""

    def __init__(self, responder: Callable[[str], Any]) -> None:
        self.responder = responder
        self.calls: List[str] = []

    def __call__(self, *, system: str, user: str, timeout: int) -> str:
        self.calls.append(user)
        answer = self.responder(user)
        if isinstance(answer, Exception):
            raise answer
        return answer if isinstance(answer, str) else json.dumps(answer)


@pytest.fixture
def store() -> Iterator[ExtractionStore]:
    extraction_store = ExtractionStore(DatabaseConfig(database_url="sqlite://"))
    extraction_store.connect()
    extraction_store.create_schema()
    yield extraction_store
    extraction_store.close()


@pytest.fixture
def session(store: ExtractionStore) -> Iterator[Session]:
    with store.session() as db_session:
        yield db_session


@pytest.fixture
def prompts() -> PromptLibrary:
    return PromptLibrary(PROMPTS_PATH)


@pytest.fixture
def scripted_inference(monkeypatch: pytest.MonkeyPatch) -> Callable[..., tuple]:
    """Factory returning ``(InferenceService, ScriptedLLM)`` for a responder."""

    def _make(responder: Callable[[str], Any]) -> tuple[InferenceService, ScriptedLLM]:
        service = InferenceService(
            LLMConfig(provider="openai", retry_attempts=1, model="test-model"),
            sleep_fn=_noop_sleep,
        )
        llm = ScriptedLLM(responder)
        monkeypatch.setattr(service, "_call_llm", llm)
        return service, llm

    return _make


@pytest.fixture
def make_run(session: Session) -> Callable[..., TaskRun]:
    """Factory for a task run with one page artifact per text in ``pages``."""

    def _make(
        schema: Dict[str, Any] | None = None,
        pages: Sequence[str] = (),
        *,
        name: str = "Test Task",
        schema_definition_id: int | None = None,
        runner_config: Dict[str, Any] | None = None,
    ) -> TaskRun:
        definition = TaskDefinition(
            team_id=1,
            name=name,
            schema_json=schema or {},
            schema_definition_id=schema_definition_id,
            runner_config=runner_config or {},
            meta={},
        )
        task_run = TaskRun(task_definition=definition, meta={})
        session.add(task_run)
        session.flush()

        output = Artifact(task_run_id=task_run.id, name="Output", meta={})
        session.add(output)
        session.flush()
        task_run.output_artifact = output

        for position, text in enumerate(pages, start=1):
            stored = StoredFile(
                filename=f"doc.txt#page={position}",
                sha256=sha256_hex(text),
                page_number=position,
                meta={},
            )
            session.add(
                Artifact(
                    task_run_id=task_run.id,
                    parent_artifact_id=output.id,
                    stored_file=stored,
                    name=f"doc.txt - Page {position}",
                    position=position,
                    text_content=text,
                    meta={},
                )
            )
        session.flush()
        return task_run

    return _make
