"""Logging setup for ccmetrics hook processes.

Every hook invocation is a fresh process, so logging is configured once at
the CLI entry point. All hooks share one rotating log file; each line is
tagged with the hook that wrote it.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOGGER_NAME = "ccmetrics"
MAX_LOG_BYTES = 1024 * 1024
BACKUP_COUNT = 3


def setup_logging(log_file: Path, debug: bool = False, tag: str = "CLI") -> logging.Logger:
    """Attach the shared file handler to the ccmetrics logger.

    Args:
        log_file: Path to the log file.
        debug: Emit DEBUG records when True, INFO and above otherwise.
        tag: Hook tag written into every line (e.g. SESSION_END).

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.propagate = False

    # Avoid adding multiple handlers if re-initialized
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = RotatingFileHandler(
            log_file, maxBytes=MAX_LOG_BYTES, backupCount=BACKUP_COUNT
        )
    except OSError:
        # Never let an unwritable log break the host integration
        handler = logging.NullHandler()

    formatter = logging.Formatter(
        f"[%(asctime)s] [{tag}] %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    return logger
