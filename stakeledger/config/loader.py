"""
Configuration Loader.

Loads config.yaml with environment variable expansion and validates it
against the pydantic schema.

Features:
- Environment variable expansion: ${VAR_NAME} or ${VAR_NAME:default}
- .env loading (never overrides variables already in the environment)
- STAKELEDGER_CONFIG selects the config file explicitly
- Type-aware parsing of expanded values: booleans, numbers, lists

Usage:
    from stakeledger.config import get_config

    config = get_config()
    print(config.staking.reward_rate)
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError as PydanticValidationError

from stakeledger.config.schema import AppConfig
from stakeledger.errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "STAKELEDGER_CONFIG"

DEFAULT_CONFIG_PATHS = [
    Path.cwd() / "config.yaml",
    Path.cwd() / "config" / "config.yaml",
    Path(__file__).resolve().parents[2] / "config.yaml",  # Project root
]

_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


def find_config_file() -> Optional[Path]:
    """Resolve the config file: STAKELEDGER_CONFIG first, then default locations."""
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        path = Path(explicit).expanduser()
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}", {"path": str(path)})
        return path

    for path in DEFAULT_CONFIG_PATHS:
        if path.exists():
            return path
    return None


def expand_value(value: Any) -> Any:
    """
    Expand environment variables in a value.

    Supports:
        ${VAR_NAME}          - Required, raises if not found
        ${VAR_NAME:default}  - Uses default if not found
        ${VAR_NAME:}         - Empty string default
    """
    if isinstance(value, dict):
        return {k: expand_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_value(item) for item in value]
    if not isinstance(value, str) or "${" not in value:
        return value

    expanded = value
    for match in _PLACEHOLDER.findall(value):
        placeholder = f"${{{match}}}"

        if ":" in match:
            var_name, default = match.split(":", 1)
            var_value = os.environ.get(var_name.strip(), default)
        else:
            var_name = match.strip()
            var_value = os.environ.get(var_name)
            if var_value is None:
                raise ConfigurationError(
                    f"Required environment variable not found: {var_name}. "
                    f"Set it or provide a default: ${{{var_name}:default_value}}",
                    {"variable": var_name},
                )

        expanded = expanded.replace(placeholder, str(var_value))

    return parse_value(expanded)


def parse_value(value: str) -> Any:
    """Parse an expanded string to the appropriate Python type."""
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False

    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        pass

    if value.startswith(("[", "{")):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            pass

    return value


def load_raw_config(path: Path) -> Dict[str, Any]:
    """Load a YAML or JSON config file into a dict."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f) or {}
            elif path.suffix == ".json":
                data = json.load(f)
            else:
                raise ConfigurationError(f"Unsupported config format: {path.suffix}", {"path": str(path)})
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to load config from {path}: {e}", {"path": str(path)}) from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config root must be a mapping: {path}", {"path": str(path)})
    return data


def load_config(
    config_path: Optional[Path] = None,
    env_file: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> AppConfig:
    """
    Load, expand and validate configuration.

    Args:
        config_path: Explicit path to config.yaml (auto-detected if None)
        env_file: .env file to load before expansion (default: ./.env if present)
        overrides: Nested dict merged over the file contents

    Returns:
        Validated AppConfig
    """
    env_path = env_file or Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path, override=False)
        logger.debug(f"Loaded .env from {env_path}")

    path = config_path or find_config_file()
    if path is None:
        logger.warning("No config.yaml found, using defaults only")
        raw: Dict[str, Any] = {}
    else:
        raw = load_raw_config(Path(path))
        logger.info(f"Loaded config from {path}")

    if overrides:
        raw = _deep_merge(raw, overrides)

    try:
        return AppConfig(**expand_value(raw))
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}", {"errors": e.errors(include_url=False, include_context=False)}) from e


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# Singleton instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached configuration (used by tests)."""
    global _config
    _config = None
