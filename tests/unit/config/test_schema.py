# tests/unit/config/test_schema.py
"""Tests for configuration schema."""
import pytest
from pydantic import ValidationError

from patchpilot.config.schema import (
    BudgetConfig,
    ExecutionConfig,
    PatchPilotConfig,
    ProviderConfig,
)


def test_budget_config_defaults():
    """Test BudgetConfig has correct defaults."""
    config = BudgetConfig()

    assert config.total_tokens == 100_000
    assert config.reserve_percent == 0.10


def test_execution_config_defaults():
    """Test ExecutionConfig defaults give three attempts."""
    config = ExecutionConfig()

    assert config.concurrency == 2
    assert config.max_retries == 2
    assert config.max_attempts == 3
    assert config.base_branch == "main"


def test_reserve_percent_must_be_below_one():
    with pytest.raises(ValidationError):
        BudgetConfig(reserve_percent=1.0)


def test_concurrency_must_be_positive():
    with pytest.raises(ValidationError):
        ExecutionConfig(concurrency=0)


def test_branch_prefix_rejects_whitespace():
    with pytest.raises(ValidationError):
        ExecutionConfig(branch_prefix="bad prefix")


def test_branch_prefix_strips_slashes():
    assert ExecutionConfig(branch_prefix="/bots/pp/").branch_prefix == "bots/pp"


def test_provider_ids_deduplicated():
    config = ProviderConfig(id="codex", additional=["claude-code", "codex"])
    assert config.ids == ["codex", "claude-code"]


def test_global_section_alias():
    """Test the 'global' key populates global_."""
    config = PatchPilotConfig.model_validate({"global": {"verbose": True}})

    assert config.global_.verbose is True
    assert config.model_dump(by_alias=True)["global"]["verbose"] is True


def test_default_config():
    config = PatchPilotConfig.default()

    assert config.provider.id == "claude-code"
    assert config.estimator.max_concurrent_reads == 50
