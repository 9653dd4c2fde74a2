"""
Logging setup for the sync kernel.

Plain text by default; JSON lines when SYNC_KERNEL_LOG_JSON is true.
Level comes from SYNC_KERNEL_LOG_LEVEL when not passed explicitly.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Optional

_RESERVED = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
))


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record:

    {"timestamp": "...Z", "level": "INFO", "logger": "sync_kernel.reconciler.engine",
     "message": "Synced demo@abc123 ...", "extra": {...}}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra_fields = {k: v for k, v in record.__dict__.items() if k not in _RESERVED}
        if extra_fields:
            log_obj["extra"] = extra_fields

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def setup_logging(level: Optional[str] = None, json_format: Optional[bool] = None) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: Log level name; defaults to SYNC_KERNEL_LOG_LEVEL or INFO
        json_format: JSON output; defaults to SYNC_KERNEL_LOG_JSON

    Returns:
        Configured root logger
    """
    level = (level or os.environ.get("SYNC_KERNEL_LOG_LEVEL", "INFO")).upper()
    if json_format is None:
        json_format = os.environ.get("SYNC_KERNEL_LOG_JSON", "false").lower() in ("1", "true", "yes")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    return root_logger
