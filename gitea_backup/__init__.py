"""
gitea-backup: verified Gitea backups to S3-compatible object storage.
"""

import logging
import os


__version__ = '1.0.0'

PRODUCT_NAME = 'gitea'

CONSOLE_FORMAT = '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
FILE_FORMAT = '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'

logger = logging.getLogger(__name__)


def configure_logging(debug: bool = False) -> logging.Logger:
    """
    Configure console logging for the package logger.

    The per-run log file is attached separately by RunContext.

    Args:
        debug: Log at DEBUG level instead of INFO

    Returns:
        The package logger
    """
    log_level = logging.DEBUG if debug else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))

    for handler in list(logger.handlers):
        if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
            logger.removeHandler(handler)

    logger.setLevel(log_level)
    logger.addHandler(console_handler)

    logger.debug(f"Logging configured (level: {logging.getLevelName(log_level)})")
    return logger


def add_log_file(log_path: str) -> logging.FileHandler:
    """
    Attach an append-mode log file to the package logger.

    Args:
        log_path: Path of the log file (parent directories are created)

    Returns:
        The attached handler, to be passed to remove_log_file()
    """
    os.makedirs(os.path.dirname(log_path) or '.', exist_ok=True)

    if logger.level == logging.NOTSET:
        logger.setLevel(logging.INFO)

    file_handler = logging.FileHandler(log_path, mode='a', encoding='utf-8')
    file_handler.setLevel(logging.DEBUG if logger.level == logging.DEBUG else logging.INFO)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
    logger.addHandler(file_handler)
    return file_handler


def remove_log_file(file_handler: logging.FileHandler):
    """Flush, close and detach a handler created by add_log_file()."""
    logger.removeHandler(file_handler)
    file_handler.flush()
    file_handler.close()
