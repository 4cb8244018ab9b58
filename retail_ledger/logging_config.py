"""
Structured Logging Configuration Module

Ledger operations log one record per outcome (committed, rejected, aborted).
Records carry the operation reference as ``correlation_id`` so every line
belonging to one deposit, withdrawal or transfer can be joined, plus the
``action``, the touched ``resource`` accounts and free-form ``extra`` data.
"""

import logging
import json
from datetime import datetime, timezone
from typing import IO, Optional

# Attributes log_action attaches to records, in output order
STRUCTURED_FIELDS = ("correlation_id", "action", "resource", "extra")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, stamped with the record's creation time"""

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Plain text with the operation reference appended when present"""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)s %(name)s [%(threadName)s]: %(message)s")

    def format(self, record):
        line = super().format(record)
        reference = getattr(record, "correlation_id", None)
        return f"{line} ({reference})" if reference else line


def setup_logging(level: str = "INFO", log_format: str = "json",
                  logger_name: str = "retail_ledger",
                  stream: Optional[IO[str]] = None) -> logging.Logger:
    """
    Install a single handler on the ledger's logger

    Args:
        level: Log level name
        log_format: "json" or "text"
        logger_name: Logger to configure; child loggers inherit it
        stream: Output stream, stderr by default

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter() if log_format == "json" else TextFormatter())
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    return logger


def get_logger(name: str = "retail_ledger") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               action: Optional[str] = None, resource: Optional[str] = None,
               correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """Log ``message`` with whichever structured fields are set"""
    fields = {
        "correlation_id": correlation_id,
        "action": action,
        "resource": resource,
        "extra": extra,
    }
    logger.log(
        getattr(logging, level.upper()), message,
        extra={name: value for name, value in fields.items() if value is not None},
        stacklevel=2
    )
