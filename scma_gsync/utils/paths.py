"""
Path utilities for configuration directory resolution.

Provides consistent path resolution for the scma-gsync configuration
directory across all modules.
"""

from __future__ import annotations

import os
from pathlib import Path

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".scma-gsync"

# Environment variable for overriding config directory
CONFIG_DIR_ENV_VAR = "SCMA_GSYNC_CONFIG_DIR"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Resolve the configuration directory path.

    Priority:
        1. Explicit config_dir parameter (if provided)
        2. SCMA_GSYNC_CONFIG_DIR environment variable
        3. Default directory (~/.scma-gsync)

    Args:
        config_dir: Optional explicit configuration directory path.

    Returns:
        Resolved Path to the configuration directory
    """
    if config_dir is not None:
        return Path(config_dir).expanduser().resolve()

    env_dir = os.environ.get(CONFIG_DIR_ENV_VAR)
    if env_dir:
        return Path(env_dir).expanduser().resolve()

    return DEFAULT_CONFIG_DIR.expanduser().resolve()


def resolve_in_config_dir(path: Path | str, config_dir: Path) -> Path:
    """Resolve a relative file path against the configuration directory."""
    path = Path(path).expanduser()
    if path.is_absolute() or path.exists():
        return path
    return config_dir / path
