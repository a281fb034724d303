"""Structured JSON logger for the import worker."""

import json
import sys
from datetime import UTC, datetime
from typing import Any

from .errors import get_current_correlation_id

LEVELS = {"debug": 10, "info": 20, "warn": 30, "error": 40}

_threshold = LEVELS["debug"]


def configure(level: str) -> None:
    """Set the process-wide log threshold."""
    global _threshold
    if level not in LEVELS:
        raise ValueError(f"Unknown log level: {level}")
    _threshold = LEVELS[level]


class Logger:
    """Structured JSON logger.

    One JSON object per line on stdout. Child loggers merge their context
    into every entry; the active correlation ID is added when one is set.
    """

    def __init__(self, context: dict[str, Any] | None = None) -> None:
        """Initialize logger with optional context."""
        self.context = context or {}

    def child(self, context: dict[str, Any]) -> "Logger":
        """Create child logger with additional context."""
        return Logger({**self.context, **context})

    def _log(self, level: str, message: str, extra: dict[str, Any] | None = None) -> None:
        """Log structured message."""
        if LEVELS[level] < _threshold:
            return
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": level,
            "message": message,
            **self.context,
        }
        correlation_id = get_current_correlation_id()
        if correlation_id:
            entry["correlation_id"] = correlation_id
        entry.update(extra or {})
        print(json.dumps(entry, default=str), file=sys.stdout, flush=True)

    def debug(self, message: str, extra: dict[str, Any] | None = None) -> None:
        """Log debug message."""
        self._log("debug", message, extra)

    def info(self, message: str, extra: dict[str, Any] | None = None) -> None:
        """Log info message."""
        self._log("info", message, extra)

    def warn(self, message: str, extra: dict[str, Any] | None = None) -> None:
        """Log warning message."""
        self._log("warn", message, extra)

    def error(self, message: str, extra: dict[str, Any] | None = None) -> None:
        """Log error message."""
        self._log("error", message, extra)


logger = Logger()
