"""
scma_gsync.config - Configuration management module

Contains configuration loading and validation.
"""

from scma_gsync.config.loader import (
    DEFAULT_CONFIG_FILE,
    ConfigError,
    ConfigLoader,
    merge_options,
)

__all__ = [
    "ConfigLoader",
    "ConfigError",
    "DEFAULT_CONFIG_FILE",
    "merge_options",
]
