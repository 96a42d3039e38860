"""Configuration management."""

from patchpilot.config.manager import ConfigManager
from patchpilot.config.schema import BudgetConfig, ExecutionConfig, PatchPilotConfig

__all__ = ["BudgetConfig", "ConfigManager", "ExecutionConfig", "PatchPilotConfig"]
