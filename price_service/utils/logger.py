# Logger - Component Logging
# Named loggers shared by the client components and the runner

"""
Logger Module

Every component asks for its own named logger at construction time.
setup_logger() configures a name once and hands back the same logger
afterwards, so constructing many clients never stacks handlers.
set_level() retunes every configured logger at once (the runner uses it
to apply the configured level to components created with defaults).
"""

import atexit
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

_loggers: Dict[str, logging.Logger] = {}


def _level(level: str) -> int:
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return value


def setup_logger(name: str = "price_service", level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """
    Return the logger for name, configuring it on first use

    Args:
        name: Logger name (usually the component class)
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_file: Also write to this file, rotated at 10 MB (5 backups)

    Returns:
        Logger instance
    """
    logger = _loggers.get(name)
    if logger is not None:
        return logger

    logger = logging.getLogger(name)
    _loggers[name] = logger
    if logger.handlers:
        # Configured elsewhere (e.g. by the embedding application)
        return logger

    logger.setLevel(_level(level))
    logger.propagate = False
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            log_file,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUPS,
            encoding='utf-8'
        ))

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def set_level(level: str):
    """Apply level to every logger created through setup_logger."""
    value = _level(level)
    for logger in _loggers.values():
        logger.setLevel(value)


@atexit.register
def _close_handlers():
    for logger in _loggers.values():
        for handler in logger.handlers[:]:
            try:
                handler.close()
            except (OSError, ValueError):
                continue
            logger.removeHandler(handler)
