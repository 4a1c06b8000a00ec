"""
Logging configuration module for scma_gsync.

All modules log through ``logging.getLogger(__name__)`` below the
``scma_gsync`` package logger, which this module configures with:
- A console handler on stderr, coloured when the terminal supports it
- A dated log file in the configuration directory that records DEBUG output
- Log levels from --verbose or environment variables
- Removal of old log files
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from scma_gsync.utils.paths import DEFAULT_CONFIG_DIR

# Root logger name for the package
LOGGER_NAME = "scma_gsync"

# Console format, kept short for interactive runs
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

# File and --verbose format
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Log files are named scma_gsync_YYYYMMDD.log
LOG_FILE_PREFIX = "scma_gsync_"

DEFAULT_LOG_DIR = DEFAULT_CONFIG_DIR / "logs"

# Environment variable names
ENV_LOG_LEVEL = "SCMA_GSYNC_LOG_LEVEL"
ENV_DEBUG = "SCMA_GSYNC_DEBUG"
ENV_LOG_FILE = "SCMA_GSYNC_LOG_FILE"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class ColoredFormatter(logging.Formatter):
    """Console formatter adding ANSI colours per level on capable terminals."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and _stderr_supports_color()

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_colors or record.levelname not in self.COLORS:
            return super().format(record)

        # Work on a copy; the file handler must see the plain record
        colored = logging.makeLogRecord(record.__dict__)
        color = self.COLORS[record.levelname]
        colored.levelname = f"{color}{record.levelname}{self.RESET}"
        colored.msg = f"{color}{record.msg}{self.RESET}"
        return super().format(colored)


def _stderr_supports_color() -> bool:
    if not getattr(sys.stderr, "isatty", None) or not sys.stderr.isatty():
        return False
    # https://no-color.org/
    if os.environ.get("NO_COLOR"):
        return False
    return os.environ.get("TERM", "") != "dumb"


def get_log_level_from_env() -> int:
    """
    Console log level from the environment.

    SCMA_GSYNC_DEBUG=1 (or true/yes) selects DEBUG, otherwise
    SCMA_GSYNC_LOG_LEVEL names the level. Unknown names mean INFO.
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG
    return _LEVELS.get(os.environ.get(ENV_LOG_LEVEL, "INFO").upper(), logging.INFO)


def get_log_file_path(log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Path of the log file for this run.

    SCMA_GSYNC_LOG_FILE overrides the location; "none", "disabled" or an
    empty value turn file logging off. Otherwise the file is dated and
    placed in log_dir.
    """
    log_file = os.environ.get(ENV_LOG_FILE)
    if log_file is not None:
        if log_file.lower() in ("none", "disabled", ""):
            return None
        return Path(log_file)

    name = f"{LOG_FILE_PREFIX}{datetime.now().strftime('%Y%m%d')}.log"
    return (log_dir or DEFAULT_LOG_DIR) / name


def _console_handler(level: int, verbose: bool, use_colors: bool) -> logging.Handler:
    fmt = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT
    formatter = (
        ColoredFormatter(fmt, DATE_FORMAT)
        if use_colors
        else logging.Formatter(fmt, DATE_FORMAT)
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _file_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT))
    return handler


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    log_file: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure the scma_gsync package logger.

    Calling it again replaces the handlers of the previous call.

    Args:
        level: Console level; None reads it from the environment
        verbose: DEBUG level and the verbose format on the console
        log_dir: Directory for the dated log file
        log_file: Explicit log file, overriding log_dir and the environment
        enable_file_logging: False logs to the console only
        use_colors: Colour console output when the terminal supports it

    Returns:
        The package logger

    Example:
        setup_logging(verbose=True, log_dir=config_dir / "logs")
    """
    if level is None:
        level = get_log_level_from_env()
    if verbose:
        level = logging.DEBUG

    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = False
    # The file handler records DEBUG whatever the console level
    logger.setLevel(logging.DEBUG if enable_file_logging else level)
    logger.addHandler(_console_handler(level, verbose, use_colors))

    if not enable_file_logging:
        return logger

    file_path = log_file or get_log_file_path(log_dir)
    if file_path is None:
        return logger

    try:
        logger.addHandler(_file_handler(file_path))
    except OSError as e:
        logger.warning(f"Could not create log file {file_path}: {e}")
    else:
        logger.debug(f"Log file: {file_path}")
    return logger


def cleanup_old_logs(log_dir: Optional[Path] = None, keep_count: int = 10) -> int:
    """
    Delete all but the keep_count most recent log files.

    A keep_count of 0 disables the cleanup. Returns the number of files
    deleted.
    """
    if keep_count <= 0:
        return 0

    logs_dir = log_dir or DEFAULT_LOG_DIR
    if not logs_dir.exists():
        return 0

    logs = sorted(
        logs_dir.glob(f"{LOG_FILE_PREFIX}*.log"),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )

    deleted = 0
    for old_log in logs[keep_count:]:
        try:
            old_log.unlink()
        except OSError as e:
            logging.getLogger(__name__).debug(f"Could not remove {old_log}: {e}")
        else:
            deleted += 1
    return deleted


def get_logger(name: str) -> logging.Logger:
    """Logger for name inside the scma_gsync hierarchy."""
    if not name.startswith(LOGGER_NAME):
        name = f"{LOGGER_NAME}.{name}"
    return logging.getLogger(name)
