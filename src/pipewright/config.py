"""Configuration loading for pipewright.

Reads the engine configuration (``pipewright.yaml``) and pipeline definition
files. Pydantic models validate both.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from pipewright.errors import ConfigError, PipelineLoadError
from pipewright.pipeline.environments import EnvironmentScope
from pipewright.pipeline.models import (
    EventKind,
    ExecutionPolicy,
    PathFilterPolicy,
    PipelineDefinition,
)

logger = logging.getLogger(__name__)


# ── Config Models ────────────────────────────────────────────────────────────


class EngineConfig(BaseModel):
    """Top-level engine configuration (matches pipewright.yaml)."""

    max_parallel_jobs: int = 4  # 0 = unbounded
    cancel_grace_period: str = "30s"
    policy: ExecutionPolicy = Field(default_factory=ExecutionPolicy)
    path_filter: PathFilterPolicy = Field(default_factory=PathFilterPolicy)
    environments: dict[str, EnvironmentScope] = Field(default_factory=dict)
    database: str | None = None  # SQLite path for run history

    @field_validator("cancel_grace_period")
    @classmethod
    def _validate_grace(cls, v: str) -> str:
        parse_duration_seconds(v)
        return v

    @field_validator("max_parallel_jobs")
    @classmethod
    def _validate_parallel(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"max_parallel_jobs must be >= 0, got {v}")
        return v

    @property
    def cancel_grace_seconds(self) -> float:
        return float(parse_duration_seconds(self.cancel_grace_period))


def default_environments() -> dict[str, EnvironmentScope]:
    """Two-tier staging → production layout used when no config file is given."""
    return {
        "staging": EnvironmentScope(
            description="Pre-release deployment tier",
            refs=["refs/heads/main"],
        ),
        "production": EnvironmentScope(
            description="Release deployment tier",
            events=[EventKind.RELEASE_PUBLISHED],
        ),
    }


# ── Loaders ──────────────────────────────────────────────────────────────────


def load_config(config_path: Path | None) -> EngineConfig:
    """Load engine configuration.

    Args:
        config_path: Path to a YAML config file, or None for defaults.

    Returns:
        Validated EngineConfig.

    Raises:
        ConfigError: If the file is missing, unreadable, or invalid.
    """
    if config_path is None:
        config = EngineConfig(environments=default_environments())
    else:
        if not config_path.exists():
            raise ConfigError(f"pipewright config not found: {config_path}")
        try:
            with open(config_path) as f:
                raw = yaml.safe_load(f) or {}
            config = EngineConfig(**raw)
        except (yaml.YAMLError, ValidationError, TypeError) as exc:
            raise ConfigError(f"Invalid config {config_path}: {exc}") from exc

    # Environment variable overrides for deployment
    max_parallel = os.environ.get("PIPEWRIGHT_MAX_PARALLEL_JOBS")
    if max_parallel:
        try:
            config.max_parallel_jobs = max(0, int(max_parallel))
        except ValueError as exc:
            raise ConfigError(f"PIPEWRIGHT_MAX_PARALLEL_JOBS must be an integer: {max_parallel!r}") from exc

    database = os.environ.get("PIPEWRIGHT_DATABASE")
    if database:
        config.database = database

    logger.info(
        "Loaded pipewright config: max_parallel_jobs=%d, environments=%s",
        config.max_parallel_jobs,
        sorted(config.environments),
    )
    return config


def load_pipeline_file(path: Path) -> PipelineDefinition:
    """Load and validate a pipeline definition from YAML.

    Raises:
        PipelineLoadError: If the file is missing or does not validate.
    """
    if not path.exists():
        raise PipelineLoadError(f"Pipeline definition not found: {path}")
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        raw.setdefault("name", path.stem)
        definition = PipelineDefinition.model_validate(raw)
    except (yaml.YAMLError, ValidationError, AttributeError) as exc:
        raise PipelineLoadError(f"Invalid pipeline definition {path}: {exc}") from exc

    logger.info("Loaded pipeline '%s' (%d jobs)", definition.name, len(definition.jobs))
    return definition


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_duration_seconds(duration: str) -> int:
    """Parse a duration string like '30s', '5m', '2h', '1d' to seconds.

    Raises ValueError on invalid format.
    """
    match = re.match(r"^(\d+)\s*(s|m|h|d)$", duration.strip())
    if not match:
        msg = f"Invalid duration format: '{duration}'. Expected <number><s|m|h|d>"
        raise ValueError(msg)
    value = int(match.group(1))
    unit = match.group(2)
    multipliers = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    return value * multipliers[unit]
