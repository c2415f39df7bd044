"""Tests for configuration loading and override behavior."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from docgraph.utils.config import (
    ExtractionRunnerConfig,
    clamp_timeout,
    get_config,
    load_config,
    reset_config,
)

PROMPTS_PATH = Path(__file__).resolve().parents[1] / "config" / "extraction_prompts.yaml"


@pytest.fixture(autouse=True)
def _reset_global_config(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure config singleton doesn't leak between tests."""
    monkeypatch.delenv("DOCGRAPH_DATABASE_URL", raising=False)
    monkeypatch.delenv("LLM__MODEL", raising=False)
    reset_config()
    yield
    reset_config()


def _write_yaml(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data), encoding="utf-8")


def _base_yaml(tmp_path: Path) -> dict:
    return {
        "prompts_path": str(PROMPTS_PATH),
        "database": {"database_url": f"sqlite:///{tmp_path / 'db' / 'docgraph.db'}"},
    }


def test_yaml_loads_extraction_options(tmp_path: Path) -> None:
    cfg_path = tmp_path / "config.yaml"
    _write_yaml(
        cfg_path,
        {
            **_base_yaml(tmp_path),
            "extraction": {"skim_batch_size": 2, "global_search_mode": "skim_only"},
        },
    )

    cfg = load_config(cfg_path)

    assert cfg.extraction.skim_batch_size == 2
    assert cfg.extraction.global_search_mode == "skim_only"
    assert cfg.extraction.confidence_threshold == 3
    assert get_config() is cfg


def test_validate_creates_sqlite_directory(tmp_path: Path) -> None:
    cfg_path = tmp_path / "config.yaml"
    _write_yaml(cfg_path, _base_yaml(tmp_path))

    load_config(cfg_path)

    assert (tmp_path / "db").is_dir()


def test_env_overrides_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cfg_path = tmp_path / "config.yaml"
    _write_yaml(cfg_path, {**_base_yaml(tmp_path), "llm": {"model": "yaml-model"}})

    monkeypatch.setenv("LLM__MODEL", "env-model")
    monkeypatch.setenv("DOCGRAPH_DATABASE_URL", "sqlite://")

    cfg = load_config(cfg_path)

    assert cfg.llm.model == "env-model"
    assert cfg.database.database_url == "sqlite://"


def test_invalid_yaml_root_type_raises(tmp_path: Path) -> None:
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(yaml.safe_dump(["not", "a", "mapping"]), encoding="utf-8")

    with pytest.raises(ValueError, match="YAML config root must be a mapping"):
        load_config(cfg_path)


def test_missing_prompts_file_is_rejected(tmp_path: Path) -> None:
    cfg_path = tmp_path / "config.yaml"
    _write_yaml(cfg_path, {**_base_yaml(tmp_path), "prompts_path": str(tmp_path / "nope.yaml")})

    with pytest.raises(ValueError, match="Prompt template file not found"):
        load_config(cfg_path)


def test_get_config_requires_load() -> None:
    with pytest.raises(RuntimeError, match="Configuration not initialized"):
        get_config()


@pytest.mark.parametrize("threshold", [0, 6])
def test_confidence_threshold_must_be_on_five_point_scale(threshold: int) -> None:
    with pytest.raises(ValueError):
        ExtractionRunnerConfig(confidence_threshold=threshold)


def test_unknown_search_mode_rejected() -> None:
    with pytest.raises(ValueError):
        ExtractionRunnerConfig(global_search_mode="sometimes")


def test_clamp_timeout_bounds() -> None:
    assert clamp_timeout(0, 60) == 1
    assert clamp_timeout(10_000, 60) == 600
    assert clamp_timeout("45", 60) == 45
    assert clamp_timeout(None, 60) == 60
