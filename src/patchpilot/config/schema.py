"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BudgetConfig(BaseModel):
    """Token budget for one planning pass."""

    total_tokens: int = Field(default=100_000, ge=0)
    reserve_percent: float = Field(default=0.10, ge=0.0, lt=1.0)  # Held back for retries


class EstimatorConfig(BaseModel):
    """Token estimation settings."""

    max_concurrent_reads: int = Field(default=50, ge=1)


class ExecutionConfig(BaseModel):
    """Execution engine settings."""

    concurrency: int = Field(default=2, ge=1)
    max_retries: int = Field(default=2, ge=0)  # Attempts after the first
    task_timeout: float = Field(default=300.0, gt=0)  # Seconds per attempt
    default_token_budget: int = Field(default=50_000, gt=0)
    allow_commits: bool = True
    base_branch: str = "main"
    branch_prefix: str = "patchpilot"
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    retry_jitter: float = Field(default=0.5, ge=0)
    circuit_failure_threshold: int = Field(default=3, ge=1)
    circuit_reset_timeout: float = Field(default=60.0, ge=0)

    @field_validator("branch_prefix", "base_branch")
    @classmethod
    def _no_whitespace(cls, value: str) -> str:
        if not value or any(ch.isspace() for ch in value):
            raise ValueError("branch names must be non-empty and contain no whitespace")
        return value.strip("/")

    @property
    def max_attempts(self) -> int:
        return 1 + self.max_retries


class ProviderConfig(BaseModel):
    """Which agent providers to run with."""

    id: str = "claude-code"
    # Extra providers to round-robin across alongside ``id``
    additional: list[str] = Field(default_factory=list)
    options: dict[str, dict[str, Any]] = Field(default_factory=dict)

    @property
    def ids(self) -> list[str]:
        return list(dict.fromkeys([self.id, *self.additional]))


class GlobalConfig(BaseModel):
    """Global patchpilot configuration."""

    color: bool = True
    verbose: bool = False


class PatchPilotConfig(BaseModel):
    """Root configuration model for patchpilot."""

    model_config = ConfigDict(populate_by_name=True)

    global_: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    estimator: EstimatorConfig = Field(default_factory=EstimatorConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)

    @classmethod
    def default(cls) -> "PatchPilotConfig":
        """Create default configuration."""
        return cls()


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    return Path.home() / ".config" / "patchpilot"


def get_config_file() -> Path:
    """Get the main configuration file path."""
    return get_config_dir() / "config.toml"
