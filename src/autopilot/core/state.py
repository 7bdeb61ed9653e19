"""Durable snapshot of orchestrator progress.

One ``state.json`` per session, rewritten atomically after every mutating
step. Exactly one execution loop writes a given state file.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
import logging
import os
from typing import Optional

from autopilot.core.fileio import read_json, write_json_atomic

logger = logging.getLogger("autopilot.state")

# Session status
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
TERMINATED = "terminated"
BLOCKED = "blocked"
SESSION_STATUSES = {IN_PROGRESS, COMPLETED, TERMINATED, BLOCKED}
RESUMABLE_STATUSES = {IN_PROGRESS, TERMINATED}

# Session phase
PHASE_INIT = "init"
PHASE_EXECUTING = "executing"
PHASE_IMPROVING = "improving"
PHASE_FINALIZING = "finalizing"
PHASE_DONE = "done"
PHASE_TERMINATED = "terminated"
PHASE_DEADLOCK = "deadlock"

_DATETIME_FIELDS = ("created_at", "started_at", "last_heartbeat", "current_task_started_at", "updated_at")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class SessionState:
    session_id: str
    spec_id: str
    status: str = IN_PROGRESS
    phase: str = PHASE_INIT
    depth: int = 0

    created_at: datetime = field(default_factory=_now)
    started_at: datetime = field(default_factory=_now)       # start of the current run
    last_heartbeat: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    # Progress
    total_tasks: int = 0
    completed_count: int = 0
    skipped_count: int = 0
    current_task_id: Optional[str] = None
    current_task_started_at: Optional[datetime] = None

    # Guard-rail counters
    consecutive_failures: int = 0
    total_dispatches: int = 0
    feedback_rotations: int = 0

    # Improvement cycles
    cycles_run: int = 0
    max_improvement_cycles: int = 0
    last_cycle_completed_count: int = 0

    # Recovery
    last_successful_task_id: Optional[str] = None
    last_error: str = ""
    termination_reason: Optional[str] = None
    can_resume: bool = True

    def to_dict(self) -> dict:
        payload = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            payload[f.name] = value
        return payload

    @classmethod
    def from_dict(cls, d: dict) -> SessionState:
        known = {f.name for f in fields(cls)}
        kwargs = {key: value for key, value in d.items() if key in known}
        for name in _DATETIME_FIELDS:
            if name in kwargs:
                kwargs[name] = _parse_dt(kwargs[name])
        for name in ("created_at", "started_at", "last_heartbeat", "updated_at"):
            if kwargs.get(name) is None:
                kwargs.pop(name, None)
        status = kwargs.get("status", IN_PROGRESS)
        if status not in SESSION_STATUSES:
            raise ValueError(f"Invalid session status: {status!r}")
        return cls(**kwargs)

    def heartbeat(self, now: Optional[datetime] = None) -> None:
        self.last_heartbeat = now or _now()

    def heartbeat_age_seconds(self, now: Optional[datetime] = None) -> float:
        return max(0.0, ((now or _now()) - self.last_heartbeat).total_seconds())

    def elapsed_hours(self, now: Optional[datetime] = None) -> float:
        return max(0.0, ((now or _now()) - self.started_at).total_seconds()) / 3600.0

    @property
    def is_resumable(self) -> bool:
        return self.status in RESUMABLE_STATUSES and self.can_resume


class StateStore:
    """Single-writer persistence for one session's state file."""

    def __init__(self, path: str) -> None:
        self.path = path

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def load(self) -> SessionState:
        return SessionState.from_dict(read_json(self.path))

    def save(self, state: SessionState) -> None:
        state.updated_at = _now()
        write_json_atomic(self.path, state.to_dict())
        logger.debug(
            "State saved: session=%s phase=%s completed=%d dispatches=%d",
            state.session_id,
            state.phase,
            state.completed_count,
            state.total_dispatches,
        )
