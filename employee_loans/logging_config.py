"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for all loan workflow operations.
Records about a single loan carry its ``loan_id`` so one request's history
can be pulled out of the log stream.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


# Record attributes copied into each JSON line when set
CONTEXT_FIELDS = ("correlation_id", "user_id", "action", "resource", "loan_id", "extra")

LOAN_RESOURCE_PREFIX = "loan:"


def loan_id_from_resource(resource: Optional[str]) -> Optional[str]:
    """'loan:<id>' -> '<id>'; None for any other resource"""
    if resource and resource.startswith(LOAN_RESOURCE_PREFIX):
        return resource[len(LOAN_RESOURCE_PREFIX):] or None
    return None


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines, tagged with the loan when there is one"""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record):
        line = super().format(record)
        loan_id = getattr(record, 'loan_id', None)
        if loan_id:
            line = f"{line} [loan={loan_id}]"
        return line


def setup_logging(level: str = "INFO", fmt: str = "json",
                  logger_name: str = "employee_loans") -> logging.Logger:
    """
    Setup structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        fmt: "json" for structured output, "text" for human-readable lines
        logger_name: Name of the logger

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(TextFormatter() if fmt == "text" else JSONFormatter())

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "employee_loans") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None, loan_id: Optional[str] = None):
    """
    Log an action with structured data.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        user_id: ID of the actor performing the action
        action: Action being performed
        resource: Resource being acted upon; a 'loan:<id>' resource also
            sets loan_id
        correlation_id: Correlation ID for request tracing
        extra: Additional structured data
        loan_id: Loan the action concerns, when the resource is not the loan
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(
        logger.name, levelno, __name__, 0, message, (), None
    )

    context = {
        'user_id': user_id,
        'action': action,
        'resource': resource,
        'correlation_id': correlation_id,
        'extra': extra,
        'loan_id': loan_id or loan_id_from_resource(resource),
    }
    for key, value in context.items():
        if value:
            setattr(record, key, value)

    logger.handle(record)
