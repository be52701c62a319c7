"""
Pydantic models for loopwork configuration.

Defines all configuration schemas using Pydantic v2 for validation,
defaults, and serialization.
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class LoggingConfig(BaseModel):
    """Logging system configuration."""

    # "human" shows run/phase/skill/gate traces without technical noise
    level: Literal["debug", "info", "human", "warn", "error"] = "human"
    file: Path | None = None
    verbose: int = 0

    model_config = {"extra": "forbid"}


class RetryConfig(BaseModel):
    """Retry policy for failed skill invocations.

    Maps onto tenacity's ``wait_exponential``: the delay before attempt n+1
    is ``base_delay * factor ** (n - 1)``, capped at ``max_delay``.
    """

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    factor: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)

    model_config = {"extra": "forbid"}


class EngineConfig(BaseModel):
    """Execution engine configuration."""

    max_parallel_skills: int = Field(
        default=4,
        ge=1,
        description="Upper bound on concurrently dispatched skills within one phase.",
    )
    skill_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Seconds before a single skill attempt is cancelled and counted as failed.",
    )
    human_gate_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Default seconds a human gate may wait before the run fails. None = forever.",
    )
    retry: RetryConfig = Field(default_factory=RetryConfig)
    state_dir: Path | None = Field(
        default=None,
        description="Directory for run persistence. None keeps runs in memory only.",
    )
    retain_terminal_runs: int = Field(
        default=100,
        ge=0,
        description="Archived terminal runs kept in memory; older ones are served from the archive.",
    )

    model_config = {"extra": "forbid"}


class MemoryConfig(BaseModel):
    """Memory store configuration."""

    root: Path | None = None
    strict: bool | None = Field(
        default=None,
        description=(
            "Raise on cross-scope reads. None derives it from the environment: "
            "strict in development, log-and-ignore in production."
        ),
    )

    model_config = {"extra": "forbid"}


class ArchiveConfig(BaseModel):
    """Run archive and calibration configuration."""

    root: Path | None = None
    calibration_window: int = Field(default=10, ge=1)

    model_config = {"extra": "forbid"}


class CatalogConfig(BaseModel):
    """Where skills and loop definitions are loaded from."""

    skills_dirs: list[Path] = Field(default_factory=list)
    loops_dirs: list[Path] = Field(default_factory=list)

    model_config = {"extra": "forbid"}

    @field_validator("skills_dirs", "loops_dirs", mode="before")
    @classmethod
    def _single_path(cls, value):
        if isinstance(value, (str, Path)):
            return [value]
        return value


class AppConfig(BaseModel):
    """Complete application configuration.

    This is the root of the configuration tree. It combines all sections
    and is the entry point for validation.
    """

    environment: Literal["development", "production"] = "development"
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)

    model_config = {"extra": "forbid"}

    @model_validator(mode="after")
    def _resolve_strictness(self) -> "AppConfig":
        if self.memory.strict is None:
            self.memory.strict = self.environment == "development"
        return self
