"""Inference service: one prompt + artifacts + response schema in, structured JSON out.

The service wraps the OpenAI and Anthropic chat APIs behind a single ``submit``
call. Provider errors are retried with backoff and then reported as an
incomplete :class:`InferenceResult`; they never propagate to callers.
"""

from __future__ import annotations

import json
import re
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from loguru import logger

from docgraph.extraction.models import InferenceResult
from docgraph.utils.config import LLMConfig, clamp_timeout
from docgraph.utils.llm_client import create_anthropic_client, create_openai_client


def format_artifacts(artifacts: Sequence[Any]) -> str:
    """Render artifacts as page blocks the model can cite by id."""
    blocks: List[str] = []
    for artifact in artifacts:
        position = getattr(artifact, "position", None)
        if position is not None:
            header = f"--- Page {position} (artifact {artifact.id}) ---"
        else:
            header = f"--- Artifact {artifact.id} ---"
        content = artifact.text_content
        if not content and artifact.json_content:
            content = json.dumps(artifact.json_content, indent=2, default=str)
        blocks.append(f"{header}\n{content or ''}".rstrip())
    return "\n\n".join(blocks)


class InferenceService:
    """Provider-agnostic structured inference with retries."""

    def __init__(
        self,
        config: Optional[LLMConfig] = None,
        *,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self.config = config or LLMConfig()
        self._sleep = sleep_fn or time.sleep

        logger.info(
            "Initialized InferenceService",
            provider=self.config.provider,
            model=self.config.model,
        )

    # -----------------------
    # Public API
    # -----------------------
    def submit(
        self,
        prompt: str,
        artifacts: Optional[Sequence[Any]] = None,
        response_schema: Optional[Dict[str, Any]] = None,
        timeout: Optional[int] = None,
        *,
        system: str = "",
    ) -> InferenceResult:
        """Run one inference call and return the parsed JSON object.

        Args:
            prompt: Rendered task prompt
            artifacts: Content units appended to the prompt as page blocks
            response_schema: JSON schema the answer must follow
            timeout: Per-call timeout in seconds (clamped to 1-600)
            system: Optional system message

        Returns:
            ``InferenceResult`` with ``completed=False`` on timeout, provider error or
            an unparseable answer.
        """
        user = self._build_user_message(prompt, artifacts or [], response_schema)
        call_timeout = clamp_timeout(timeout if timeout is not None else self.config.timeout, 60)

        try:
            raw_response = self._call_llm(system=system, user=user, timeout=call_timeout)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Inference call failed", error=str(exc))
            return InferenceResult.failure(str(exc))

        data = self._extract_json(raw_response)
        if not isinstance(data, dict):
            logger.warning("Inference response was not a JSON object")
            return InferenceResult.failure("Response was not a JSON object")
        return InferenceResult.success(data)

    # -----------------------
    # Prompt assembly
    # -----------------------
    def _build_user_message(
        self,
        prompt: str,
        artifacts: Sequence[Any],
        response_schema: Optional[Dict[str, Any]],
    ) -> str:
        sections = [prompt.strip()]
        if artifacts:
            sections.append("# Documents\n\n" + format_artifacts(artifacts))
        if response_schema:
            sections.append(
                "# Response Format\n\nRespond with a single JSON object matching this JSON schema "
                "and nothing else:\n\n```json\n"
                + json.dumps(response_schema, indent=2)
                + "\n```"
            )
        return "\n\n".join(sections)

    # -----------------------
    # LLM invocation
    # -----------------------
    def _call_llm(self, *, system: str, user: str, timeout: int) -> str:
        attempts = max(1, self.config.retry_attempts)
        last_error: Exception | None = None

        logger.debug(f"Calling LLM using {self.config.provider}: {self.config.model}")

        for attempt in range(1, attempts + 1):
            try:
                if self.config.provider == "openai":
                    return self._call_openai(system=system, user=user, timeout=timeout)
                if self.config.provider == "anthropic":
                    return self._call_anthropic(system=system, user=user, timeout=timeout)
                raise ValueError(f"Unsupported LLM provider: {self.config.provider}")
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning(
                    "LLM request failed",
                    attempt=attempt,
                    max_attempts=attempts,
                    error=str(exc),
                )
                if attempt >= attempts:
                    break
                backoff = min(2 ** (attempt - 1), 8)
                self._sleep(backoff)

        if last_error:
            raise last_error
        raise RuntimeError("LLM request failed for unknown reasons")

    def _call_openai(self, *, system: str, user: str, timeout: int) -> str:
        client = create_openai_client(
            api_key=self.config.api_key,
            base_url=self.config.base_url,
            timeout=timeout,
        )

        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": user})

        response = client.chat.completions.create(
            model=self.config.model,
            messages=messages,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            response_format={"type": "json_object"},
            timeout=timeout,
        )

        content = response.choices[0].message.content
        if isinstance(content, list):
            parts = []
            for item in content:
                if isinstance(item, dict):
                    parts.append(str(item.get("text", "")))
                else:
                    parts.append(str(item))
            return "\n".join(parts).strip()
        return str(content or "")

    def _call_anthropic(self, *, system: str, user: str, timeout: int) -> str:
        client = create_anthropic_client(
            api_key=self.config.api_key,
            base_url=self.config.base_url,
            timeout=timeout,
        )
        create_kwargs: Dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": [{"role": "user", "content": user}],
        }
        if system:
            create_kwargs["system"] = system

        message = client.messages.create(**create_kwargs)
        parts = []
        for block in message.content:
            if getattr(block, "type", None) == "text":
                parts.append(getattr(block, "text", ""))
        return "\n".join(parts).strip()

    # -----------------------
    # Parsing helpers
    # -----------------------
    def _extract_json(self, text: str) -> Any:
        if not text:
            return None

        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass

        match = re.search(r"(\{.*\}|\[.*\])", text, flags=re.DOTALL)
        if not match:
            return None

        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError:
            return None
