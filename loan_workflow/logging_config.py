"""
Structured Logging Configuration Module

Workflow operations log through ``log_action`` so every line carries who
acted, what they did and which loan it touched. ``JSONFormatter`` renders
those fields as one JSON object per line.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional

# Attributes log_action attaches to a record, in output order
CONTEXT_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record; context fields that were not set are left out"""

    def format(self, record):
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def _build_handler(log_format: str, log_file: Optional[str]) -> logging.Handler:
    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    formatter = JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT)
    handler.setFormatter(formatter)
    return handler


def setup_logging(level: str = "INFO", logger_name: str = "loanflow",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Point the workflow logger at a single handler.

    Calling it again replaces the previous handler rather than stacking a
    second one. The logger stops propagating to the root logger.

    Args:
        level: Level name, case-insensitive
        logger_name: Top of the workflow logger hierarchy
        log_format: "json" or "text"
        log_file: Write here instead of stderr
    """
    logger = logging.getLogger(logger_name)
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()

    logger.addHandler(_build_handler(log_format, log_file))
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def setup_logging_from_config(config) -> logging.Logger:
    """Configure logging from a LoanWorkflowConfig"""
    return setup_logging(
        level=config.log_level,
        log_format=config.log_format,
        log_file=config.log_file
    )


def get_logger(name: str = "loanflow") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a workflow action with its context.

    Args:
        logger: Logger instance
        level: Level name such as "info" or "warning"
        message: Human-readable summary
        user_id: Staff member performing the action
        action: Operation name
        resource: Loan application ID
        correlation_id: Request tracing ID
        extra: Any further structured data
    """
    numeric_level = logging.getLevelName(level.upper())
    if not logger.isEnabledFor(numeric_level):
        return

    context = {
        'user_id': user_id,
        'action': action,
        'resource': resource,
        'correlation_id': correlation_id,
        'extra': extra,
    }
    logger.log(
        numeric_level, message,
        extra={key: value for key, value in context.items() if value},
        stacklevel=2
    )
