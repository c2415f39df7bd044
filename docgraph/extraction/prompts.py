"""YAML-backed prompt templates."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

DEFAULT_PROMPTS_PATH = Path(__file__).resolve().parents[2] / "config" / "extraction_prompts.yaml"


class PromptLibrary:
    """Loads ``{key: {system, user_template}}`` templates and renders them."""

    def __init__(self, prompts_path: str | Path | None = None) -> None:
        self.prompts_path = Path(prompts_path) if prompts_path else DEFAULT_PROMPTS_PATH
        self.prompts = self._load_prompts(self.prompts_path)

    def _load_prompts(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            raise FileNotFoundError(f"Extraction prompt template not found: {path}")
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Prompt template root must be a mapping/dict: {path}")
        return data

    def render(self, key: str, context: Dict[str, Any]) -> Tuple[str, str]:
        """Render the ``(system, user)`` pair for ``key``.

        Raises:
            KeyError: If the template or one of its placeholders is missing
        """
        if key not in self.prompts:
            raise KeyError(f"Prompt key not found in template: {key}")

        prompt = self.prompts.get(key) or {}
        system = str(prompt.get("system", "")).strip()
        user_template = str(prompt.get("user_template", ""))

        try:
            user = user_template.format(**context)
        except KeyError as exc:
            missing = exc.args[0]
            raise KeyError(f"Missing placeholder '{missing}' in prompt context for '{key}'")
        return system, user.strip()
