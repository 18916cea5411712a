"""Logging setup for the learnpath namespace."""

import json
import logging
import sys
from typing import Optional

from ..config import config

BASE_LOGGER = "learnpath"


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0]:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


def setup_logging(
    level: Optional[str] = None,
    json_format: Optional[bool] = None,
) -> logging.Logger:
    """
    Configure the package logger with a single stdout handler.

    Args:
        level: Log level name (defaults to config.logging.log_level)
        json_format: Emit JSON lines (defaults to config.logging.json_format)

    Returns:
        The configured ``learnpath`` logger
    """
    level = (level or config.logging.log_level).upper()
    if json_format is None:
        json_format = config.logging.json_format

    logger = logging.getLogger(BASE_LOGGER)
    logger.setLevel(getattr(logging, level, logging.INFO))

    # Avoid duplicate handlers on repeated setup
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    logger.addHandler(handler)
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger under the package namespace."""
    if name and not name.startswith(BASE_LOGGER):
        return logging.getLogger(f"{BASE_LOGGER}.{name}")
    return logging.getLogger(name or BASE_LOGGER)
