"""
Utility modules for pixelops.

Provides:
- Configuration management
- Logging utilities
- JSON helpers
"""

from .config import (
    DEFAULT_CONFIG,
    load_config,
    save_config,
    validate_config,
    get_config_value,
)

from .logging import (
    get_logger,
    setup_logging,
    log_parameters,
    ProcessingTimer,
)

from .json_utils import (
    NumpyEncoder,
    atomic_json_dump,
)

__all__ = [
    # Config
    'DEFAULT_CONFIG',
    'load_config',
    'save_config',
    'validate_config',
    'get_config_value',
    # Logging
    'get_logger',
    'setup_logging',
    'log_parameters',
    'ProcessingTimer',
    # JSON
    'NumpyEncoder',
    'atomic_json_dump',
]
