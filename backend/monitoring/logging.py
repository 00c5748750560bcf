"""
Structured Logging for the Answer Cache.

FOCUS: Log every cache HIT / MISS / SET / skip with its reason
MUST: Include request_id so cache events line up with the request that caused them
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone

# Context variable for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
) -> None:
    """
    Setup structured logging.

    Args:
        level: Log level
        json_format: Use JSON format (recommended for production)

    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers = [handler]


class JsonFormatter(logging.Formatter):
    """JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(""),
        }

        # Add extra fields
        if hasattr(record, "extra_data"):
            log_data.update(record.extra_data)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)
