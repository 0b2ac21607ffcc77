"""
PPP — Structured Audit Logger
=============================
Records every engine request outcome (configured, detected, failed,
checked) in JSONL format for post-mortem analysis of unusable photos.

Key Features:
  - JSONL (Newline Delimited JSON) format
  - Thread-safe writes (one lock around the file handle)
  - Levels: AUDIT, WARN, ERROR, SYSTEM
  - NumPy-aware serialization (points, vectors)
"""

import json
import logging
import os
import sys
import threading
import time
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np

_log = logging.getLogger("PppAudit")


class PppJSONEncoder(json.JSONEncoder):
    """Handles NumPy and Enum types for JSON serialization."""
    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


class PppAuditLogger:
    """Append-only JSONL audit trail of engine requests."""

    FILE_NAME = "ppp_audit.jsonl"

    def __init__(self, log_dir: str = "logs"):
        self.log_dir = log_dir
        os.makedirs(self.log_dir, exist_ok=True)

        self.log_path = os.path.join(self.log_dir, self.FILE_NAME)
        self._file = open(self.log_path, "a", encoding="utf-8")
        self._lock = threading.Lock()

        self.log({
            "event": "system_startup",
            "python_version": sys.version,
            "platform": sys.platform,
        }, level="SYSTEM")

    def log(self, data: Dict[str, Any], level: str = "AUDIT", event: Optional[str] = None):
        """Append log entry."""
        entry = {
            "timestamp": time.time(),
            "level": level,
            "event": event or data.get("event", "unknown"),
            "data": data,
        }
        line = json.dumps(entry, cls=PppJSONEncoder) + "\n"

        with self._lock:
            if self._file.closed:
                return
            self._file.write(line)
            self._file.flush()

    def log_request(self, operation: str, stages: list, outcome: Dict[str, Any],
                    event: Optional[str] = None):
        """One line per engine request: the stage trail and its outcome."""
        self.log(
            {"operation": operation, "stages": stages, **outcome},
            level="AUDIT" if event != "request_failed" else "WARN",
            event=event or operation,
        )

    def warn(self, message: str, context: Optional[Dict] = None):
        _log.warning(message)
        self.log({"message": message, "context": context}, level="WARN", event="system_warning")

    def error(self, message: str, exception: Optional[Exception] = None):
        _log.error(message)
        details = str(exception) if exception else None
        self.log({"message": message, "exception": details}, level="ERROR", event="system_error")

    @property
    def closed(self) -> bool:
        return self._file.closed

    def close(self):
        """Clean shutdown."""
        with self._lock:
            if self._file.closed:
                return
        self.log({"message": "Logger shutting down"}, level="SYSTEM", event="system_shutdown")
        with self._lock:
            self._file.close()


_logger: Optional[PppAuditLogger] = None


def get_logger(log_dir: str = "logs") -> PppAuditLogger:
    global _logger
    if _logger is not None and _logger.log_dir == log_dir and not _logger.closed:
        return _logger
    if _logger is not None:
        _logger.close()
    _logger = PppAuditLogger(log_dir)
    return _logger
