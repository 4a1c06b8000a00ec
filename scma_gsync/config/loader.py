"""
Configuration loader module for club roster synchronization.

Provides YAML-based configuration file loading with support for:
- Loading configuration from default or custom paths
- Graceful handling of missing configuration files
- Validation of key types and values
- Merging with CLI argument overrides
"""

import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from scma_gsync.utils.paths import resolve_config_dir

# Default configuration file name
DEFAULT_CONFIG_FILE = "config.yaml"

# Accepted authentication types
VALID_AUTH_TYPES = ("oauth", "service-account")

# Valid configuration keys and their expected types
VALID_KEYS: dict[str, Any] = {
    # Auth options
    "auth_type": str,
    "secret_file": str,
    "token_file": str,
    # Targets
    "calendar": str,
    "event_summary_prefix": str,
    "group": str,
    "email_aliases_file": str,
    "notify_acl_insert": bool,
    # Execution options
    "concurrency": int,
    "max_retries": int,
    "initial_retry_delay": (int, float),
    "max_retry_delay": (int, float),
    # Source options
    "web_base_url": str,
    "web_event_details": bool,
    # Logging options
    "verbose": bool,
    "log_dir": str,
    "log_retention_count": int,
}

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


class ConfigLoader:
    """
    YAML configuration file loader.

    Attributes:
        config_dir: Directory containing the configuration file
        config_file: Name of the configuration file

    Usage:
        loader = ConfigLoader()
        config = loader.load_and_validate()

        # Load from specific file
        config = loader.load_from_file("/path/to/config.yaml")
    """

    def __init__(
        self, config_dir: Optional[Path] = None, config_file: str = DEFAULT_CONFIG_FILE
    ):
        """
        Initialize the configuration loader.

        Args:
            config_dir: Directory containing the configuration file.
                       Defaults to ~/.scma-gsync/ or $SCMA_GSYNC_CONFIG_DIR
            config_file: Name of the configuration file (default: config.yaml)
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    def _get_config_path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """
        Load configuration from the default configuration file.

        Returns an empty dict if the file doesn't exist.

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        return self.load_from_file(self._get_config_path())

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Load configuration from a specific file.

        Returns an empty dict if the file doesn't exist.

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        path = Path(path)

        if not path.exists():
            logger.debug(f"Configuration file not found: {path}")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

        if config is None:
            logger.debug(f"Configuration file is empty: {path}")
            return {}

        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration file must contain a YAML dictionary, "
                f"got {type(config).__name__}"
            )

        logger.debug(f"Loaded configuration from {path}")
        return config

    def validate(self, config: dict[str, Any]) -> None:
        """
        Validate configuration structure and values.

        Unknown keys are reported with a warning and otherwise ignored.

        Raises:
            ConfigError: If configuration is invalid
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        for key, value in config.items():
            if key not in VALID_KEYS:
                logger.warning(f"Ignoring unknown configuration key: {key}")
                continue

            expected_type = VALID_KEYS[key]
            # bool is an int subclass but never a valid count or delay
            if isinstance(value, bool) and expected_type is not bool:
                valid = False
            else:
                valid = isinstance(value, expected_type)
            if not valid:
                if isinstance(expected_type, tuple):
                    type_name = " or ".join(t.__name__ for t in expected_type)
                else:
                    type_name = expected_type.__name__
                raise ConfigError(
                    f"Invalid type for '{key}': expected {type_name}, "
                    f"got {type(value).__name__}"
                )

        if "auth_type" in config and config["auth_type"] not in VALID_AUTH_TYPES:
            raise ConfigError(
                f"Invalid auth_type '{config['auth_type']}'. "
                f"Must be one of: {', '.join(VALID_AUTH_TYPES)}"
            )

        for key in ("concurrency", "max_retries", "log_retention_count"):
            if key in config and config[key] < 1:
                raise ConfigError(f"{key} must be >= 1, got {config[key]}")

        for key in ("initial_retry_delay", "max_retry_delay"):
            if key in config and config[key] <= 0:
                raise ConfigError(f"{key} must be > 0, got {config[key]}")

        if (
            "initial_retry_delay" in config
            and "max_retry_delay" in config
            and config["initial_retry_delay"] > config["max_retry_delay"]
        ):
            raise ConfigError("initial_retry_delay must not exceed max_retry_delay")

    def load_and_validate(self) -> dict[str, Any]:
        """
        Load configuration and validate it.

        Raises:
            ConfigError: If configuration cannot be loaded or is invalid
        """
        config = self.load()
        if config:
            self.validate(config)
        return config


def merge_options(config: dict[str, Any], **options: Any) -> dict[str, Any]:
    """
    Overlay CLI options on a configuration dictionary.

    Options left unset on the command line (None) keep the configured value.
    """
    merged = dict(config)
    for key, value in options.items():
        if value is not None:
            merged[key] = value
    return merged
