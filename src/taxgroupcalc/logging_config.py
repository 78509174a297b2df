"""
Logging setup shared by the API, the query layer and the resolver.

Format: [TIMESTAMP] [LEVEL] [MODULE:FUNCTION:LINE] MESSAGE
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from . import config


class StructuredFormatter(logging.Formatter):
    """One line per record, easy to grep."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        location = f"{record.module}:{record.funcName}:{record.lineno}"
        msg = f"[{timestamp}] [{record.levelname:8s}] [{location}] {record.getMessage()}"
        if record.exc_info:
            msg += f"\n{self.formatException(record.exc_info)}"
        return msg


def setup_logger(
    name: str,
    level: Optional[str] = None,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Return a logger with the structured formatter attached.

    Args:
        name: Logger name (usually __name__)
        level: DEBUG, INFO, WARNING, ERROR. Defaults to TAXGROUPCALC_LOG_LEVEL
        log_file: Optional extra file output. Defaults to TAXGROUPCALC_LOG_FILE
    """
    logger = logging.getLogger(name)

    # Avoid duplicate handlers on re-import
    if logger.handlers:
        return logger

    log_level = getattr(logging, (level or config.LOG_LEVEL).upper(), logging.INFO)
    logger.setLevel(log_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(StructuredFormatter())
    logger.addHandler(console_handler)

    log_file = log_file or config.LOG_FILE
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(log_level)
        file_handler.setFormatter(StructuredFormatter())
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
