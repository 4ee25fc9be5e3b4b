"""Shared logging configuration for the ICON converter."""
import logging
import os
from logging.handlers import RotatingFileHandler

LOG_DIR = os.environ.get(
    "ICONCONV_LOG_DIR", os.path.join(os.path.dirname(os.path.abspath(__file__)), "logs")
)

FORMATTER = logging.Formatter(
    fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

# Lifecycle transitions of single files (download, decompression, extraction, ...).
FILE_STATUS_LOGGER = "file_status"


def _rotating_handler(log_name: str, level: int) -> RotatingFileHandler:
    os.makedirs(LOG_DIR, exist_ok=True)
    handler = RotatingFileHandler(
        os.path.join(LOG_DIR, f"{log_name}.log"),
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5
    )
    handler.setLevel(level)
    handler.setFormatter(FORMATTER)
    return handler


def setup_logging(name: str, level: str = "INFO", log_name: str = "converter") -> logging.Logger:
    """Set up logging with console and rotating file handlers.

    Args:
        name: Logger name (usually __name__)
        level: Log level string (DEBUG, INFO, WARNING, ERROR)
        log_name: Base name of the rotating log file

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid duplicate handlers if called multiple times
    if logger.handlers:
        return logger

    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(log_level)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(FORMATTER)
    logger.addHandler(console_handler)

    logger.addHandler(_rotating_handler(log_name, log_level))
    return logger


def set_debug(enabled: bool, *names: str):
    """Switch the given loggers (and their file handlers) between DEBUG and INFO."""
    level = logging.DEBUG if enabled else logging.INFO
    for name in names:
        logger = logging.getLogger(name)
        logger.setLevel(level)
        for handler in logger.handlers:
            if isinstance(handler, RotatingFileHandler):
                handler.setLevel(level)


def setup_file_status_logging(enabled: bool) -> logging.Logger:
    """Configure the file status logger. Disabled loggers drop every record."""
    logger = logging.getLogger(FILE_STATUS_LOGGER)
    logger.propagate = False
    if enabled and not logger.handlers:
        logger.addHandler(_rotating_handler("filestatus", logging.DEBUG))
    logger.setLevel(logging.DEBUG)
    logger.disabled = not enabled
    return logger
