"""Configuration management using Pydantic for validation."""

from pathlib import Path
from typing import Any, Dict, Literal

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_INFERENCE_TIMEOUT = 1
MAX_INFERENCE_TIMEOUT = 600


def clamp_timeout(value: Any, default: int) -> int:
    """Clamp an inference timeout (seconds) to the supported 1-600 range."""
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        seconds = default
    return max(MIN_INFERENCE_TIMEOUT, min(seconds, MAX_INFERENCE_TIMEOUT))


class LLMConfig(BaseSettings):
    """LLM configuration."""

    provider: Literal["openai", "anthropic"] = "openai"
    model: str = "gpt-4.1-mini"
    temperature: float = 0.0
    max_tokens: int = 4096
    timeout: int = 120
    retry_attempts: int = 3
    base_url: str | None = None
    api_key: str | None = None

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        """Validate temperature is between 0 and 1."""
        if not 0 <= v <= 1:
            raise ValueError("Temperature must be between 0 and 1")
        return v


class ExtractionRunnerConfig(BaseSettings):
    """Options recognized by the extraction runner.

    The dumped form of this model is part of the plan cache fingerprint, so any
    change here invalidates cached plans.
    """

    group_max_points: int = Field(default=10, ge=1)
    global_search_mode: Literal["intelligent", "skim_only", "exhaustive_only"] = "intelligent"
    skim_batch_size: int = Field(default=5, ge=1)
    confidence_threshold: int = 3
    extraction_timeout: int = 300
    classification_timeout: int = 120
    duplicate_resolution_timeout: int = 60
    conflict_resolution_timeout: int = 120

    @field_validator("confidence_threshold")
    @classmethod
    def validate_confidence_threshold(cls, v: int) -> int:
        """Confidence scores are on a 1-5 scale."""
        if not 1 <= v <= 5:
            raise ValueError("confidence_threshold must be between 1 and 5")
        return v

    def fingerprint_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class DatabaseConfig(BaseSettings):
    """Database configuration from environment variables."""

    model_config = SettingsConfigDict(env_prefix="DOCGRAPH_", case_sensitive=False)

    database_url: str = Field(default="sqlite:///data/docgraph.db")
    echo: bool = Field(default=False)


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["json", "text"] = "text"
    file: str = "logs/docgraph.log"
    max_size_mb: int = 100
    backup_count: int = 5


class Config(BaseSettings):
    """Main configuration class."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    # Configuration sections
    llm: LLMConfig = Field(default_factory=LLMConfig)
    extraction: ExtractionRunnerConfig = Field(default_factory=ExtractionRunnerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    prompts_path: Path = Field(default=Path("config/extraction_prompts.yaml"))
    team_id: int = 1

    @staticmethod
    def _deep_merge_dict(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Deep-merge two dicts (overrides win)."""
        merged: Dict[str, Any] = dict(base)
        for key, value in overrides.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = Config._deep_merge_dict(merged[key], value)
            else:
                merged[key] = value
        return merged

    @classmethod
    def from_yaml(cls, yaml_path: str | Path = "config/config.yaml") -> "Config":
        """Load configuration from YAML file and environment variables.

        Precedence (highest to lowest):
        1) Environment variables / .env
        2) YAML file
        3) Model defaults

        Args:
            yaml_path: Path to YAML configuration file

        Returns:
            Config instance with loaded settings

        Raises:
            FileNotFoundError: If YAML file doesn't exist
            ValueError: If the YAML root is not a mapping
        """
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path) as f:
            yaml_config = yaml.safe_load(f) or {}

        if not isinstance(yaml_config, dict):
            raise ValueError(f"YAML config root must be a mapping/dict: {yaml_path}")

        # DatabaseConfig reads its own DOCGRAPH_* variables, which the parent model
        # does not see, so its overrides are merged in explicitly.
        env_overrides = cls().model_dump(exclude_defaults=True)

        db_env_overrides = DatabaseConfig().model_dump(exclude_defaults=True)
        if db_env_overrides:
            yaml_db = yaml_config.get("database", {})
            env_overrides["database"] = cls._deep_merge_dict(
                yaml_db if isinstance(yaml_db, dict) else {},
                db_env_overrides,
            )

        merged = cls._deep_merge_dict(yaml_config, env_overrides)

        return cls(**merged)

    def validate_config(self) -> None:
        """Validate configuration settings.

        Raises:
            ValueError: If configuration is invalid
        """
        if not self.prompts_path.exists():
            raise ValueError(f"Prompt template file not found: {self.prompts_path}")

        if self.database.database_url.startswith("sqlite:///") and ":memory:" not in (
            self.database.database_url
        ):
            db_path = Path(self.database.database_url.removeprefix("sqlite:///"))
            db_path.parent.mkdir(parents=True, exist_ok=True)


# Global configuration instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance.

    Raises:
        RuntimeError: If configuration hasn't been initialized
    """
    global _config
    if _config is None:
        raise RuntimeError("Configuration not initialized. Call load_config() first.")
    return _config


def load_config(yaml_path: str | Path = "config/config.yaml") -> Config:
    """Load and validate configuration.

    Args:
        yaml_path: Path to YAML configuration file

    Returns:
        Loaded and validated Config instance
    """
    global _config
    _config = Config.from_yaml(yaml_path)
    _config.validate_config()
    return _config


def reset_config() -> None:
    """Reset global configuration (mainly for testing)."""
    global _config
    _config = None
