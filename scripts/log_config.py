#!/usr/bin/env python3
"""
Logging setup shared by every keen-pbr module.

The level is taken from the environment:
- LOG_LEVEL: DEBUG, INFO, WARNING, ERROR, CRITICAL
- DEBUG: "1"/"true" enables DEBUG when LOG_LEVEL is not set

Usage:
    from log_config import setup_logging

    setup_logging()
    logger = logging.getLogger(__name__)
    logger.info("[ipset vpn_sites] applied")
"""

import logging
import os
import sys
from typing import Optional

DEFAULT_LOG_LEVEL = "INFO"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FORMAT_DETAILED = "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty HTTP libraries never log below WARNING unless we are debugging them
NOISY_LIBRARIES = ("urllib3", "requests", "charset_normalizer")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
    "FATAL": logging.CRITICAL,
}

_logging_configured = False


def get_log_level() -> int:
    """Resolve the log level from LOG_LEVEL, falling back to the DEBUG flag."""
    level_str = os.environ.get("LOG_LEVEL", "").upper().strip()

    if not level_str:
        debug_flag = os.environ.get("DEBUG", "").lower().strip()
        level_str = "DEBUG" if debug_flag in ("1", "true", "yes", "on") else DEFAULT_LOG_LEVEL

    return _LEVELS.get(level_str, logging.INFO)


def setup_logging(
    name: Optional[str] = None,
    level: Optional[int] = None,
    detailed: bool = False,
    force: bool = False
) -> logging.Logger:
    """Configure the root logger once per process.

    Args:
        name: Logger to return, None for the root logger
        level: Explicit level, None to read it from the environment
        detailed: Include file name and line number in every record
        force: Reconfigure even if logging was already set up

    Returns:
        The requested logger
    """
    global _logging_configured

    if _logging_configured and not force:
        return logging.getLogger(name)

    if level is None:
        level = get_log_level()

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT_DETAILED if detailed else LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stderr,
        force=force or not _logging_configured
    )

    for lib_logger in NOISY_LIBRARIES:
        logging.getLogger(lib_logger).setLevel(max(level, logging.WARNING))

    _logging_configured = True

    logger = logging.getLogger(name)
    logger.debug(f"Logging configured: level={logging.getLevelName(level)}")
    return logger
