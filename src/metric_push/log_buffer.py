"""In-memory ring of recent log lines.

Keeps the last N formatted records from the ``metric_push`` loggers so a
running service can report what it has been doing without reading log
files.
"""

from __future__ import annotations

import logging
import threading
from collections import deque

DEFAULT_CAPACITY = 1000
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


class RecentLogHandler(logging.Handler):
    """Logging handler that retains the newest *capacity* formatted records."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self._lines: deque[str] = deque(maxlen=capacity)
        self._lines_lock = threading.Lock()
        self.setFormatter(logging.Formatter(LOG_FORMAT))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
        except Exception:
            self.handleError(record)
            return
        with self._lines_lock:
            self._lines.append(line)

    def records(self, limit: int | None = None) -> list[str]:
        """Return retained lines oldest first (the last *limit* if given)."""
        with self._lines_lock:
            lines = list(self._lines)
        return lines if limit is None else lines[-limit:]

    def clear(self) -> None:
        with self._lines_lock:
            self._lines.clear()


def install(
    capacity: int = DEFAULT_CAPACITY, logger_name: str = "metric_push"
) -> RecentLogHandler:
    """Attach a RecentLogHandler to *logger_name* and return it."""
    handler = RecentLogHandler(capacity)
    logging.getLogger(logger_name).addHandler(handler)
    return handler
