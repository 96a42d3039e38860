"""Configuration manager for loading and merging configs."""

import logging
from pathlib import Path
from typing import Any

import toml
from pydantic import ValidationError

from patchpilot.config.schema import PatchPilotConfig, get_config_file
from patchpilot.core.errors import ConfigError

logger = logging.getLogger(__name__)

PROJECT_CONFIG_NAME = ".patchpilot.toml"


class ConfigManager:
    """Loads configuration once per process and caches it on the class."""

    _config: PatchPilotConfig | None = None

    @classmethod
    def get_config(cls) -> PatchPilotConfig:
        """Get the current configuration, loading if necessary."""
        if cls._config is None:
            cls._config = cls.load_config()
        return cls._config

    @classmethod
    def load_config(cls, start: Path | None = None) -> PatchPilotConfig:
        """Load configuration from all sources.

        Priority (highest to lowest):
        1. Project-level config (.patchpilot.toml in cwd or parents)
        2. User config (~/.config/patchpilot/config.toml)
        3. Default config
        """
        config_dict: dict[str, Any] = {}

        user_config_file = get_config_file()
        if user_config_file.exists():
            config_dict = cls._deep_merge(config_dict, cls._load_file(user_config_file))

        project_config_file = cls._find_project_config(start)
        if project_config_file is not None:
            config_dict = cls._deep_merge(config_dict, cls._load_file(project_config_file))

        if not config_dict:
            return PatchPilotConfig.default()
        return cls.validate(config_dict)

    @classmethod
    def validate(cls, config_dict: dict[str, Any]) -> PatchPilotConfig:
        """Validate a raw config dict, raising ConfigError with every problem found."""
        try:
            return PatchPilotConfig.model_validate(config_dict)
        except ValidationError as e:
            problems = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
            raise ConfigError(
                "Invalid configuration: " + "; ".join(problems),
                context={"errors": problems},
                cause=e,
            ) from e

    @classmethod
    def _load_file(cls, path: Path) -> dict[str, Any]:
        try:
            return toml.load(path)
        except toml.TomlDecodeError as e:
            raise ConfigError(f"Cannot parse {path}: {e}", context={"path": str(path)}, cause=e) from e

    @classmethod
    def reload(cls) -> PatchPilotConfig:
        """Force reload configuration from disk."""
        cls._config = cls.load_config()
        return cls._config

    @classmethod
    def reset(cls) -> None:
        cls._config = None

    @classmethod
    def _find_project_config(cls, start: Path | None = None) -> Path | None:
        """Find project-level config file by searching up from ``start`` (default cwd)."""
        cwd = (start or Path.cwd()).resolve()
        for parent in [cwd, *cwd.parents]:
            config_file = parent / PROJECT_CONFIG_NAME
            if config_file.exists():
                logger.debug("Using project config %s", config_file)
                return config_file
            # Stop at home directory
            if parent == Path.home():
                break
        return None

    @classmethod
    def _deep_merge(
        cls, base: dict[str, Any], override: dict[str, Any]
    ) -> dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = cls._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    @classmethod
    def get_value(cls, key_path: str, default: Any = None) -> Any:
        """Get a configuration value by dot-separated path.

        Example: get_value("execution.concurrency")
        """
        config = cls.get_config()
        current: Any = config.model_dump(by_alias=True)

        for key in key_path.split("."):
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return default
        return current
