"""
Logging Setup
Routes the ``weave.*`` module loggers to a rotating file under the state
directory and, for interactive runs, to stderr. Stdout stays reserved for
command output (overviews, search results) so it can be piped.
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

from weave.config import WeaveConfig

PACKAGE_LOGGER = "weave"
LOG_FILE_NAME = "weave.log"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

FILE_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(filename)s:%(lineno)d | %(message)s"
CONSOLE_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"


def log_dir_for(state_dir: Path) -> Path:
    """Directory holding the Weave log files for a given state directory."""
    return Path(state_dir) / "logs" / PACKAGE_LOGGER


def reset_logging(logger_name: str = PACKAGE_LOGGER) -> None:
    """Close and detach every handler on the logger, restoring propagation."""
    logger = logging.getLogger(logger_name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


def setup_logging(
    config: WeaveConfig,
    verbose: bool = False,
    console_output: bool = True,
    log_dir: Optional[Path] = None,
) -> logging.Logger:
    """
    Configure the ``weave`` package logger from a WeaveConfig.

    Safe to call repeatedly: handlers from an earlier call are closed first,
    so reconfiguring never leaks open log files.

    Args:
        config: Supplies ``state_dir`` (log location) and ``log_level``
        verbose: Force DEBUG on the console regardless of ``log_level``
        console_output: Also log to stderr
        log_dir: Override the log directory (defaults to <state_dir>/logs/weave)

    Returns:
        The configured package logger

    Example:
        >>> from weave import WeaveConfig
        >>> from weave_logging import setup_logging
        >>> logger = setup_logging(WeaveConfig.from_env(), verbose=True)
    """
    reset_logging(PACKAGE_LOGGER)

    level = logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    log_dir = Path(log_dir) if log_dir is not None else log_dir_for(config.state_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(logging.DEBUG)

    # File gets everything; the console honours the configured level
    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt="%H:%M:%S"))
        logger.addHandler(console_handler)

    logger.propagate = False
    logger.debug(f"Weave logging initialized at {logging.getLevelName(level)}, file: {log_file}")
    return logger
