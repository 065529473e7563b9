# src/core/logging_config.py
"""Logging configuration for webgate"""

import os
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Chatty third-party loggers; their INFO output drowns the request log
QUIET_LOGGERS = ("uvicorn.access", "pymongo", "asyncio", "multipart")


def setup_logging(
    level: Optional[str] = None,
    log_dir: Optional[Union[str, Path]] = None,
    log_to_file: Optional[bool] = None
) -> logging.Logger:
    """
    Configure the root logger: console always, a rotating file unless disabled.

    Unset arguments fall back to LOG_LEVEL, LOG_DIR and LOG_TO_FILE. Calling
    it twice does not duplicate handlers.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if log_to_file is None:
        log_to_file = os.getenv("LOG_TO_FILE", "true").lower() not in ("0", "false", "no")

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    if not any(type(h) is logging.StreamHandler for h in root_logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_to_file:
        directory = Path(log_dir or os.getenv("LOG_DIR", "logs"))
        directory.mkdir(parents=True, exist_ok=True)
        log_file = (directory / 'webgate.log').resolve()

        if not any(isinstance(h, RotatingFileHandler) and h.baseFilename == str(log_file) for h in root_logger.handlers):
            # 5 MB per file, 5 backups
            file_handler = RotatingFileHandler(
                filename=str(log_file),
                maxBytes=5 * 1024 * 1024,
                backupCount=5,
                encoding='utf-8'
            )
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
