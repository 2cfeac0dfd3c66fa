"""
Configuration defaults and config file loading/saving for pixelops.

Usage:
    from pixelops.utils.config import load_config, get_config_value, DEFAULT_CONFIG

    # Load config with defaults
    config = load_config('/path/to/pixelops.json')

    # Look up a single value (environment overrides applied)
    tile_size = get_config_value('tile_size')

Environment Variables:
    PIXELOPS_TILE_SIZE: Default server tile width/height in pixels
    PIXELOPS_INFERENCE_MODE: Default inference mode ('shared' or 'thread-local')
    PIXELOPS_NUM_WORKERS: Default worker count for bulk tile reads
    PIXELOPS_LOG_LEVEL: Default logging level
"""

import copy
import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, TypedDict, Union

from pixelops.exceptions import ConfigurationError
from pixelops.utils.json_utils import atomic_json_dump
from pixelops.utils.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# CONFIGURATION TYPE DEFINITIONS
# =============================================================================

class PixelOpsConfig(TypedDict, total=False):
    """
    Configuration for op servers and prediction models.

    Attributes:
        tile_size: Server tile width/height in pixels. Valid range: 16-8192.
        border_type: Border handling for pad_and_apply and re-tiling.
            Valid values: 'reflect', 'replicate', 'constant'.
        inference_mode: How prediction models are shared between threads.
            Valid values: 'shared', 'thread-local'.
        tile_cache_size: Maximum tiles held by a server cache (0 disables).
            Valid range: 0-100000.
        num_workers: Threads used by ImageOpServer.read_all_tiles.
            Valid range: 1-64.
        log_level: Logging level name.
        json_indent: Indentation used when saving op graphs. Valid range: 0-8.
    """
    tile_size: int
    border_type: str
    inference_mode: str
    tile_cache_size: int
    num_workers: int
    log_level: str
    json_indent: int


# Validation constraints for each config key
_VALIDATION_RULES: Dict[str, Dict[str, Any]] = {
    "tile_size": {"min": 16, "max": 8192, "type": int},
    "tile_cache_size": {"min": 0, "max": 100000, "type": int},
    "num_workers": {"min": 1, "max": 64, "type": int},
    "json_indent": {"min": 0, "max": 8, "type": int},
    "border_type": {"choices": ("reflect", "replicate", "constant"), "type": str},
    "inference_mode": {"choices": ("shared", "thread-local"), "type": str},
    "log_level": {"choices": ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"), "type": str},
}


DEFAULT_CONFIG: PixelOpsConfig = {
    "tile_size": 512,
    "border_type": "reflect",
    "inference_mode": "shared",
    "tile_cache_size": 256,
    "num_workers": 4,
    "log_level": "INFO",
    "json_indent": 2,
}

# Environment variable -> (config key, converter)
_ENV_OVERRIDES = {
    "PIXELOPS_TILE_SIZE": ("tile_size", int),
    "PIXELOPS_INFERENCE_MODE": ("inference_mode", str),
    "PIXELOPS_NUM_WORKERS": ("num_workers", int),
    "PIXELOPS_LOG_LEVEL": ("log_level", lambda v: v.upper()),
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    """
    Recursively merge override dict into base dict (in-place).

    For nested dicts, merges keys rather than replacing the entire dict.
    All other values are deep-copied from override.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)


def _apply_env_overrides(config: Dict[str, Any]) -> None:
    for env_name, (key, convert) in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or raw == "":
            continue
        try:
            config[key] = convert(raw)
        except ValueError:
            logger.warning(f"Ignoring invalid value for {env_name}: {raw!r}")


def validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate config values against the known rules.

    Unknown keys are ignored so that callers can carry extra settings.

    Args:
        config: Configuration dictionary

    Returns:
        The same config dictionary

    Raises:
        ConfigurationError: If a known key has the wrong type or is out of range
    """
    for key, rule in _VALIDATION_RULES.items():
        if key not in config:
            continue
        value = config[key]
        expected = rule["type"]
        if isinstance(value, bool) or not isinstance(value, expected):
            raise ConfigurationError(
                f"Config value '{key}' must be {expected.__name__}, got {type(value).__name__}"
            )
        if "min" in rule and value < rule["min"]:
            raise ConfigurationError(f"Config value '{key}'={value} is below minimum {rule['min']}")
        if "max" in rule and value > rule["max"]:
            raise ConfigurationError(f"Config value '{key}'={value} is above maximum {rule['max']}")
        if "choices" in rule and value not in rule["choices"]:
            raise ConfigurationError(
                f"Config value '{key}'={value!r} must be one of {', '.join(rule['choices'])}"
            )
    return config


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load configuration, merging a JSON file and environment overrides over defaults.

    Args:
        config_path: Optional path to a JSON config file. Missing files are
            ignored; unreadable files are logged and ignored.

    Returns:
        Dict with merged and validated configuration
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path is not None:
        config_path = Path(config_path)
        if config_path.exists():
            try:
                with open(config_path, 'r') as f:
                    file_config = json.load(f)
                _deep_merge(config, file_config)
            except (json.JSONDecodeError, IOError) as e:
                logger.warning(f"Could not load config from {config_path}: {e}")

    _apply_env_overrides(config)
    return validate_config(config)


def save_config(config: Dict[str, Any], config_path: Union[str, Path]) -> Path:
    """
    Save configuration to a JSON file.

    Args:
        config: Configuration dict to save
        config_path: Destination path

    Returns:
        Path to saved config file
    """
    config_path = Path(config_path)
    atomic_json_dump(validate_config(dict(config)), config_path, indent=2, sort_keys=True)
    return config_path


def get_config_value(key: str, config: Optional[Dict[str, Any]] = None) -> Any:
    """
    Get a single configuration value.

    Args:
        key: Config key name
        config: Optional config dict; if None, defaults plus environment
            overrides are used

    Returns:
        The configured value, or None if the key is unknown
    """
    if config is None:
        config = copy.deepcopy(DEFAULT_CONFIG)
        _apply_env_overrides(config)
        validate_config(config)
    return config.get(key, DEFAULT_CONFIG.get(key))
