"""
Centralized logging configuration for the application.
"""

import logging
import os
import sys
from typing import Optional, TextIO

from .config import AppConfig


def _level_name(config: Optional[AppConfig]) -> str:
    if config is not None:
        return config.log_level.upper()
    return os.getenv('LOG_LEVEL', 'INFO').upper()


def setup_logging(config: Optional[AppConfig] = None, stream: Optional[TextIO] = None) -> None:
    """
    Setup centralized logging configuration.

    Args:
        config: AppConfig instance, falls back to the LOG_LEVEL variable if None.
            When given, replaces any configuration applied earlier.
        stream: Output stream, stdout if None (stdio MCP transport needs stderr)
    """
    # Configure root logger
    logging.basicConfig(level=getattr(logging, _level_name(config), logging.INFO),
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                        handlers=[logging.StreamHandler(stream or sys.stdout)],
                        force=config is not None)


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Get a logger with proper configuration.

    Args:
        name: Logger name (usually __name__)
        config: AppConfig instance; when given, its log level is applied to the logger

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    if config is not None:
        logger.setLevel(getattr(logging, _level_name(config), logging.INFO))
    return logger
