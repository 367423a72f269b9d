"""
Named loggers writing to a dated file under the logs directory.

Every logger shares one file handler so the LLM, cache, change-analysis and
pipeline streams interleave in a single file per day.
"""

import os
import logging
from datetime import datetime

from constants.llm import ENV_LOG_DIR
from constants.paths import (
    LOGS_DIR_NAME,
    LOG_FILE_PREFIX,
    LOG_DATE_FORMAT,
    LOG_LINE_FORMAT,
)

# Package root (parent of utils/) so logs stay next to the code
_PACKAGE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

_file_handler = None


def _get_file_handler() -> logging.Handler:
    global _file_handler
    if _file_handler is None:
        log_directory = os.getenv(ENV_LOG_DIR, os.path.join(_PACKAGE_DIR, LOGS_DIR_NAME))
        os.makedirs(log_directory, exist_ok=True)
        log_file = os.path.join(
            log_directory, f"{LOG_FILE_PREFIX}{datetime.now().strftime(LOG_DATE_FORMAT)}.log"
        )
        _file_handler = logging.FileHandler(log_file, encoding="utf-8")
        _file_handler.setFormatter(logging.Formatter(LOG_LINE_FORMAT))
    return _file_handler


def get_logger(name: str) -> logging.Logger:
    """
    Return the named logger, attaching the shared file handler once.

    Loggers do not propagate to the root logger (avoids duplicate lines when
    the host application configures logging itself).
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        logger.setLevel(logging.INFO)
        logger.propagate = False
        logger.addHandler(_get_file_handler())
    return logger
