"""
Configuration loader for resgraph.

Settings come from three layers, later ones winning:

1. planner/config/defaults.py constants
2. resgraph.yml (explicit --config path, or found in the current directory)
3. RESGRAPH_* environment variables

"""

import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

import yaml

import planner.config.defaults as defaults
from planner.exceptions import ConfigurationError

# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class PlannerConfig:
    max_workers: int = defaults.MAX_WORKERS
    state_file: str = defaults.STATE_FILE
    edge_prefix: str = defaults.EDGE_PREFIX
    output_format: str = defaults.OUTPUT_FORMAT
    cache_dir: str = defaults.CACHE_DIR
    log_level: str = defaults.LOG_LEVEL

    @property
    def cache_path(self) -> str:
        return os.path.expanduser(self.cache_dir)


def find_config_file(directory: Optional[str] = None) -> Optional[str]:
    """Return the first resgraph.yml/resgraph.yaml in directory, if any."""
    directory = directory or os.getcwd()
    for name in defaults.CONFIG_FILENAMES:
        candidate = os.path.join(directory, name)
        if os.path.isfile(candidate):
            return candidate
    return None


def validate_settings(settings: Dict[str, Any], source: str) -> Dict[str, Any]:
    """
    Check keys and value types of raw settings.

    Args:
        settings: Raw mapping loaded from YAML or the environment
        source: Where the settings came from (for error messages)

    Returns:
        The settings, with max_workers coerced to int

    Raises:
        ConfigurationError: On unknown keys or invalid values
    """
    known = {f.name: f for f in fields(PlannerConfig)}
    unknown = sorted(set(settings) - set(known))
    if unknown:
        raise ConfigurationError(
            f"Unknown setting(s) in {source}: {', '.join(unknown)}",
            context={"source": source},
        )

    validated = dict(settings)
    if "max_workers" in validated:
        try:
            validated["max_workers"] = int(validated["max_workers"])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"max_workers must be an integer, got {validated['max_workers']!r}",
                context={"source": source},
            ) from e
        if validated["max_workers"] < 1:
            raise ConfigurationError(
                "max_workers must be at least 1", context={"source": source}
            )

    for key in ("state_file", "edge_prefix", "output_format", "cache_dir", "log_level"):
        if key in validated and not isinstance(validated[key], str):
            raise ConfigurationError(
                f"{key} must be a string, got {type(validated[key]).__name__}",
                context={"source": source},
            )

    if validated.get("output_format", defaults.OUTPUT_FORMAT) not in (
        defaults.SUPPORTED_OUTPUT_FORMATS
    ):
        raise ConfigurationError(
            f"output_format must be one of: {', '.join(defaults.SUPPORTED_OUTPUT_FORMATS)}",
            context={"source": source},
        )
    if "log_level" in validated:
        validated["log_level"] = validated["log_level"].upper()
        if validated["log_level"] not in defaults.LOG_LEVELS:
            raise ConfigurationError(
                f"log_level must be one of: {', '.join(defaults.LOG_LEVELS)}",
                context={"source": source},
            )
    return validated


def load_config(path: Optional[str] = None) -> PlannerConfig:
    """
    Load resgraph settings.

    Args:
        path: Explicit config file; when None, resgraph.yml in the current
            directory is used if present

    Returns:
        PlannerConfig with defaults, file values and env overrides applied

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid

    Examples:
        >>> config = load_config()
        >>> config.max_workers
        4
    """
    settings: Dict[str, Any] = {}
    if path is not None and not os.path.isfile(path):
        raise ConfigurationError(f"Config file {path} not found", context={"path": path})
    path = path or find_config_file()

    if path:
        try:
            with open(path, "r") as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.error(f"Failed to parse config file {path}: {e}")
            raise ConfigurationError(
                f"Could not parse config file {path}: {e}", context={"path": path}
            ) from e
        if not isinstance(loaded, dict):
            raise ConfigurationError(
                f"Config file {path} must contain a mapping", context={"path": path}
            )
        settings.update(validate_settings(loaded, path))
        logger.info(f"Loaded configuration from {path}")

    env_settings = {}
    for variable, key in defaults.ENV_OVERRIDES.items():
        if os.environ.get(variable):
            env_settings[key] = os.environ[variable]
    if env_settings:
        settings.update(validate_settings(env_settings, "environment"))
        logger.debug(f"Environment overrides: {', '.join(sorted(env_settings))}")

    return PlannerConfig(**settings)
