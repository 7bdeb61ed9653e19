"""Centralized logging configuration for autopilot.

Sets up Python's logging system to write to both stdout and a rotating
log file, plus a dedicated JSONL stream of session events (dispatches,
failures, rotations, checkpoints, terminations, improvement cycles).

Log directory structure::

    .autopilot/logs/
    ├── autopilot.log             # All Python logger output (rotating)
    └── session-events.log        # One JSON record per session event (rotating)
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import os
import time
from typing import Any, Optional

# Module-level log directory, set by setup_logging()
_log_dir: Optional[str] = None

session_event_logger = logging.getLogger("autopilot._events")

_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
_BACKUP_COUNT = 5


def get_log_dir() -> Optional[str]:
    """Return the configured log directory, or None before setup."""
    return _log_dir


def setup_logging(log_dir: str, log_level: str = "info") -> None:
    """Configure the logging system with both stdout and file handlers.

    This should be called once at application startup.
    """
    global _log_dir
    _log_dir = log_dir

    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    # ── Root logger: stdout + rotating file ──────────────────
    root = logging.getLogger()
    root.setLevel(level)

    # Clear any existing handlers (avoid duplicate output on re-init)
    root.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    stdout_handler = logging.StreamHandler()
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(fmt)
    root.addHandler(stdout_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, "autopilot.log"),
        maxBytes=_MAX_BYTES,
        backupCount=_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)  # Capture everything to file
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    # ── Session events logger (JSONL) ────────────────────────
    _setup_jsonl_logger(
        session_event_logger,
        os.path.join(log_dir, "session-events.log"),
    )

    logging.getLogger("autopilot").info(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def _setup_jsonl_logger(logger_instance: logging.Logger, path: str) -> None:
    """Configure a logger to write raw JSONL messages to a rotating file."""
    logger_instance.setLevel(logging.INFO)
    logger_instance.propagate = False  # Don't bubble up to root
    logger_instance.handlers.clear()

    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=_MAX_BYTES,
        backupCount=_BACKUP_COUNT,
        encoding="utf-8",
    )
    # Raw formatter; message is already JSON
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger_instance.addHandler(handler)


def log_session_event(session_id: str, event: str, depth: int = 0, **fields: Any) -> dict[str, Any]:
    """Emit one structured session event and return the record."""
    record: dict[str, Any] = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "session_id": session_id,
        "event": event,
        "depth": depth,
    }
    for key, value in fields.items():
        if isinstance(value, str) and len(value) > 2000:
            value = value[:2000] + "…(truncated)"
        record[key] = value
    session_event_logger.info(json.dumps(record, default=str))
    return record
