"""
Environment-aware logging for the API process.

- development: human-readable coloured lines
- staging/production: one JSON object per line for log aggregation

Library code (``models``, ``clients``) logs through ``logging.getLogger`` and
inherits whatever ``init`` installs on the root logger.
"""

import json
import logging
import os
import sys
from datetime import datetime
from typing import Optional

JSON_ENVIRONMENTS = ("production", "prod", "staging")


class ColoredFormatter(logging.Formatter):
    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "ENDC": "\033[0m",
    }

    def format(self, record):
        level_color = self.COLORS.get(record.levelname, "")
        end_color = self.COLORS["ENDC"]
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        module_name = record.name if record.name != "__main__" else "main"
        line = f"[{timestamp}] {level_color}{record.levelname:8s}{end_color} [{module_name}] {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
            "environment": os.getenv("ENVIRONMENT", "unknown"),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def _formatter(environment: Optional[str] = None) -> logging.Formatter:
    environment = (environment or os.getenv("ENVIRONMENT", "development")).lower()
    if environment in JSON_ENVIRONMENTS:
        return JsonFormatter()
    return ColoredFormatter()


def init(level: str = "INFO", environment: Optional[str] = None) -> None:
    """Install a single stdout handler on the root logger."""
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(_formatter(environment))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    # uvicorn and apscheduler bring their own handlers; route them through ours
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "apscheduler"):
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.propagate = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
