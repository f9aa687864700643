"""
Structured Logging Configuration Module

JSON log lines for ledger postings and lifecycle transitions. Every logger
lives under the "microfinance" namespace so one call to setup_logging()
configures the whole package.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


ROOT_LOGGER = "microfinance"

# Attributes copied from a LogRecord into the JSON line when present
STRUCTURED_FIELDS = ("user_id", "action", "resource", "account_id", "extra")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """Render a record as one JSON object per line"""

    def format(self, record):
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = ROOT_LOGGER,
                  log_format: str = "json") -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Logger to configure; child loggers inherit its handler
        log_format: "json" for JSONFormatter, "text" for plain lines

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, extra: Optional[dict] = None,
               account_id: Optional[str] = None):
    """
    Log a staff action with structured fields.

    Args:
        logger: Logger instance
        level: Level name (info, warning, ...)
        message: Human readable message
        user_id: Staff member performing the action
        action: Dotted action name, e.g. "ledger.post"
        resource: Loan, account or entry the action touched
        extra: Additional structured data
        account_id: Ledger account affected, when different from resource
    """
    fields = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "account_id": account_id,
        "extra": extra,
    }
    logger.log(
        getattr(logging, level.upper()),
        message,
        extra={k: v for k, v in fields.items() if v}
    )
