"""Structured logging.

Provides JSON-formatted logs with:
- Correlation IDs (session_id, draft_id, turn_key, request_id)
- Event tags for state transitions (event="draft_transition", ...)
"""
import logging
import sys
import json
from datetime import datetime, timezone
from typing import Optional

# Record attributes copied into the JSON payload when present
_CORRELATION_FIELDS = (
    "request_id",
    "session_id",
    "draft_id",
    "turn_key",
    "intent",
    "event",
    "from_status",
    "to_status",
    "mode",
    "error_code",
    "elapsed_ms",
)


class StructuredFormatter(logging.Formatter):
    """JSON formatter with correlation IDs."""

    def format(self, record):
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
        }

        for field in _CORRELATION_FIELDS:
            value = getattr(record, field, None)
            if value not in (None, ""):
                log_data[field] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: Optional[str] = None):
    """Setup structured JSON logging on the root logger.

    Args:
        level: Log level name; defaults to the LOG_LEVEL setting
    """
    if level is None:
        from copilot.core.config import get_settings
        level = get_settings().log_level

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()
    root_logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a logger.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
