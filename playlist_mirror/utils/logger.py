"""Logger utility for structured logging."""

import logging
import os
import sys
from pathlib import Path


LOGGER_NAME = "playlist_mirror"


def _console_level() -> int:
    """Console level follows the DEBUG environment flag."""
    if os.environ.get("DEBUG", "").lower() == "true":
        return logging.DEBUG
    return logging.INFO


def setup_logger(name: str = LOGGER_NAME, log_file: str = None) -> logging.Logger:
    """
    Set up a logger with console and optional file output.

    Args:
        name: Logger name
        log_file: Optional path to log file. If None, logs to console only.

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG if log_file else _console_level())

    console_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    file_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Module loggers may already carry the plain console handler from get_logger()
    console_handlers = [
        h for h in logger.handlers
        if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
    ]
    if console_handlers:
        for handler in console_handlers:
            handler.setFormatter(console_formatter)
    else:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(_console_level())
        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)

    has_file = any(isinstance(h, logging.FileHandler) for h in logger.handlers)
    if log_file and not has_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str = LOGGER_NAME) -> logging.Logger:
    """
    Get or create a logger instance with console output.

    Args:
        name: Logger name

    Returns:
        Logger instance with console handler
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        logger.setLevel(_console_level())

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(_console_level())
        console_handler.setFormatter(logging.Formatter('%(message)s'))
        logger.addHandler(console_handler)

    return logger
