"""
Configuration loader with deep merge.

Precedence (lowest to highest):
1. Defaults (defined in the Pydantic schemas)
2. YAML file
3. Environment variables
4. Programmatic overrides

The merge is recursive so every key is preserved at every level.
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ..errors import ConfigError
from .schema import AppConfig


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursive dictionary merge.

    Returns:
        New dictionary; ``override`` wins on leaf conflicts.

    Example:
        >>> deep_merge({"a": {"b": 1, "c": 2}, "d": 3}, {"a": {"b": 99}, "e": 4})
        {'a': {'b': 99, 'c': 2}, 'd': 3, 'e': 4}
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_yaml_config(config_path: Path | None) -> dict[str, Any]:
    """Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If config_path does not exist.
        ConfigError: If the file is not valid YAML or not a mapping.
    """
    if not config_path:
        return {}

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    return data


def load_env_overrides() -> dict[str, Any]:
    """Load overrides from environment variables.

    Supported variables:
        LOOPWORK_ENV: environment (development | production)
        LOOPWORK_LOG_LEVEL: logging.level
        LOOPWORK_STATE_DIR: engine.state_dir
        LOOPWORK_MAX_PARALLEL: engine.max_parallel_skills
        LOOPWORK_MEMORY_DIR: memory.root
        LOOPWORK_ARCHIVE_DIR: archive.root
    """
    overrides: dict[str, Any] = {}

    if env := os.environ.get("LOOPWORK_ENV"):
        overrides["environment"] = env.lower()

    if log_level := os.environ.get("LOOPWORK_LOG_LEVEL"):
        overrides.setdefault("logging", {})["level"] = log_level.lower()

    if state_dir := os.environ.get("LOOPWORK_STATE_DIR"):
        overrides.setdefault("engine", {})["state_dir"] = state_dir

    if max_parallel := os.environ.get("LOOPWORK_MAX_PARALLEL"):
        overrides.setdefault("engine", {})["max_parallel_skills"] = max_parallel

    if memory_dir := os.environ.get("LOOPWORK_MEMORY_DIR"):
        overrides.setdefault("memory", {})["root"] = memory_dir

    if archive_dir := os.environ.get("LOOPWORK_ARCHIVE_DIR"):
        overrides.setdefault("archive", {})["root"] = archive_dir

    return overrides


def load_config(
    config_path: Path | str | None = None,
    overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """Load and validate the complete application configuration.

    Args:
        config_path: Path to the YAML configuration file.
        overrides: Nested dict applied last (e.g. {"engine": {"max_parallel_skills": 1}}).

    Raises:
        FileNotFoundError: If config_path does not exist.
        ConfigError: If the merged configuration is not valid.
    """
    merged = load_yaml_config(Path(config_path) if config_path else None)
    merged = deep_merge(merged, load_env_overrides())
    merged = deep_merge(merged, overrides or {})

    try:
        return AppConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
