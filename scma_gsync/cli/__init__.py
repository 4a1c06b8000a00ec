"""CLI package for scma_gsync."""

from scma_gsync.cli.formatters import show_detailed_changes, show_report
from scma_gsync.cli.main import (
    DEFAULT_CONFIG_FILE,
    cli,
    get_config_dir,
    sync_options,
)
from scma_gsync.utils import DEFAULT_CONFIG_DIR

__all__ = [
    "DEFAULT_CONFIG_DIR",
    "DEFAULT_CONFIG_FILE",
    "cli",
    "get_config_dir",
    "show_detailed_changes",
    "show_report",
    "sync_options",
]
