from __future__ import annotations

from types import SimpleNamespace

import pytest

from docgraph.extraction.inference import InferenceService, format_artifacts
from docgraph.utils.config import LLMConfig


def _noop_sleep(_: float) -> None:
    return None


def _page(artifact_id: int, text: str, position: int | None = 1, json_content=None):
    return SimpleNamespace(id=artifact_id, position=position, text_content=text, json_content=json_content)


def test_submit_parses_json_and_builds_sections(scripted_inference) -> None:
    inference, llm = scripted_inference(lambda _user: 'Sure! {"answer": 42}')

    result = inference.submit(
        "Find the answer.",
        artifacts=[_page(7, "The answer is 42.")],
        response_schema={"type": "object", "properties": {"answer": {"type": "integer"}}},
        timeout=5000,
    )

    assert result.completed is True
    assert result.json_data == {"answer": 42}
    user = llm.calls[0]
    assert user.startswith("Find the answer.")
    assert "# Documents\n\n--- Page 1 (artifact 7) ---\nThe answer is 42." in user
    assert '"answer": {\n' in user
    assert user.index("# Documents") < user.index("# Response Format")


def test_submit_reports_failures_as_incomplete(scripted_inference) -> None:
    inference, _ = scripted_inference(lambda _user: RuntimeError("rate limited"))

    result = inference.submit("prompt")

    assert result.completed is False
    assert result.json_data is None
    assert result.error == "rate limited"


@pytest.mark.parametrize("answer", ["", "no json here", "[1, 2, 3]"])
def test_non_object_answers_are_incomplete(scripted_inference, answer: str) -> None:
    inference, _ = scripted_inference(lambda _user: answer)

    assert inference.submit("prompt").completed is False


def test_call_llm_retries_then_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    service = InferenceService(LLMConfig(provider="openai", retry_attempts=3), sleep_fn=_noop_sleep)
    attempts = []

    def failing_openai(*, system: str, user: str, timeout: int) -> str:
        attempts.append(timeout)
        raise ConnectionError("offline")

    monkeypatch.setattr(service, "_call_openai", failing_openai)

    with pytest.raises(ConnectionError, match="offline"):
        service._call_llm(system="", user="hi", timeout=30)
    assert attempts == [30, 30, 30]


def test_call_llm_returns_after_transient_error(monkeypatch: pytest.MonkeyPatch) -> None:
    sleeps = []
    service = InferenceService(LLMConfig(provider="anthropic", retry_attempts=3), sleep_fn=sleeps.append)
    answers = iter([TimeoutError("slow"), '{"ok": true}'])

    def flaky_anthropic(*, system: str, user: str, timeout: int) -> str:
        answer = next(answers)
        if isinstance(answer, Exception):
            raise answer
        return answer

    monkeypatch.setattr(service, "_call_anthropic", flaky_anthropic)

    assert service._call_llm(system="sys", user="hi", timeout=10) == '{"ok": true}'
    assert sleeps == [1]


def test_extract_json_finds_embedded_object() -> None:
    service = InferenceService(LLMConfig(), sleep_fn=_noop_sleep)

    assert service._extract_json('```json\n{"a": {"b": 1}}\n```') == {"a": {"b": 1}}
    assert service._extract_json("{broken") is None


def test_format_artifacts_falls_back_to_json_content() -> None:
    rendered = format_artifacts(
        [_page(1, "first"), _page(2, None, position=None, json_content={"k": "v"})]
    )

    assert rendered.startswith("--- Page 1 (artifact 1) ---\nfirst")
    assert '--- Artifact 2 ---\n{\n  "k": "v"\n}' in rendered
