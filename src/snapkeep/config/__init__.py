"""
Configuration management for snapkeep.

This module handles loading, validating, and saving configuration settings.
"""

from snapkeep.config.settings import (
    DEFAULT_ENTITIES,
    ConfigurationError,
    Settings,
    get_passphrase,
    load_config,
    save_config,
)

__all__ = [
    "Settings",
    "load_config",
    "save_config",
    "get_passphrase",
    "ConfigurationError",
    "DEFAULT_ENTITIES",
]
