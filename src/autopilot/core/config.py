from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

_LOG_LEVELS = {"debug", "info", "warning", "error"}
_TRUE_WORDS = {"1", "true", "yes", "on"}
_FALSE_WORDS = {"0", "false", "no", "off"}

# Five failed dispatches in a row stop the session.
STALL_THRESHOLD = 5
# Outer loop runs at depth 0; improvement cycles may nest two levels below it.
MAX_NESTING_DEPTH = 2
# Upper bound on the tasks a single improvement cycle may generate.
IMPROVEMENT_TASK_CAP = 5


@dataclass
class Settings:
    log_level: str
    data_dir: str
    log_dir: str
    max_blockers: int
    checkpoint_interval: int
    improvement_milestone: int
    max_improvement_cycles: int
    max_tasks: int
    max_duration_hours: float
    feedback_rotation_interval: int
    task_timeout_seconds: int
    stale_heartbeat_minutes: int
    max_improvement_tasks: int
    worker_command: Optional[str]
    repo_dir: str
    commit_enabled: bool

    @staticmethod
    def from_env() -> "Settings":
        data_dir = os.getenv("AUTOPILOT_DATA_DIR") or str(Path.cwd() / ".autopilot")
        settings = Settings(
            log_level=os.getenv("AUTOPILOT_LOG_LEVEL", "info").strip().lower(),
            data_dir=data_dir,
            log_dir=os.getenv("AUTOPILOT_LOG_DIR") or str(Path(data_dir) / "logs"),
            max_blockers=_get_env_int("AUTOPILOT_MAX_BLOCKERS", default=3, minimum=1),
            checkpoint_interval=_get_env_int("AUTOPILOT_CHECKPOINT_INTERVAL", default=3, minimum=1),
            improvement_milestone=_get_env_int("AUTOPILOT_IMPROVEMENT_MILESTONE", default=5, minimum=1),
            max_improvement_cycles=_get_env_int("AUTOPILOT_MAX_IMPROVEMENT_CYCLES", default=3, minimum=0),
            max_tasks=_get_env_int("AUTOPILOT_MAX_TASKS", default=50, minimum=1),
            max_duration_hours=_get_env_float("AUTOPILOT_MAX_DURATION_HOURS", default=4.0),
            feedback_rotation_interval=_get_env_int("AUTOPILOT_FEEDBACK_ROTATION_INTERVAL", default=10, minimum=1),
            task_timeout_seconds=_get_env_int("AUTOPILOT_TASK_TIMEOUT", default=1800, minimum=1),
            stale_heartbeat_minutes=_get_env_int("AUTOPILOT_STALE_HEARTBEAT_MINUTES", default=30, minimum=1),
            max_improvement_tasks=_get_env_int(
                "AUTOPILOT_MAX_IMPROVEMENT_TASKS",
                default=IMPROVEMENT_TASK_CAP,
                minimum=1,
                maximum=IMPROVEMENT_TASK_CAP,
            ),
            worker_command=os.getenv("AUTOPILOT_WORKER_COMMAND") or None,
            repo_dir=os.getenv("AUTOPILOT_REPO_DIR") or str(Path.cwd()),
            commit_enabled=_get_env_bool("AUTOPILOT_COMMIT", default=True),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise ValueError on values that cannot drive a session."""
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"AUTOPILOT_LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}, got: {self.log_level!r}")
        if not self.data_dir.strip():
            raise ValueError("AUTOPILOT_DATA_DIR must be non-empty")
        if self.max_duration_hours <= 0:
            raise ValueError(f"AUTOPILOT_MAX_DURATION_HOURS must be > 0, got: {self.max_duration_hours}")
        if not 1 <= self.max_improvement_tasks <= IMPROVEMENT_TASK_CAP:
            raise ValueError(
                f"AUTOPILOT_MAX_IMPROVEMENT_TASKS must be between 1 and {IMPROVEMENT_TASK_CAP}, "
                f"got: {self.max_improvement_tasks}"
            )
        for name in (
            "max_blockers",
            "checkpoint_interval",
            "improvement_milestone",
            "max_tasks",
            "feedback_rotation_interval",
            "task_timeout_seconds",
            "stale_heartbeat_minutes",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got: {getattr(self, name)}")
        if self.max_improvement_cycles < 0:
            raise ValueError(f"max_improvement_cycles must be >= 0, got: {self.max_improvement_cycles}")

    @property
    def tasks_dir(self) -> str:
        return os.path.join(self.data_dir, "tasks")

    @property
    def sessions_dir(self) -> str:
        return os.path.join(self.data_dir, "sessions")

    def task_file(self, spec_id: str) -> str:
        return os.path.join(self.tasks_dir, f"{spec_id}.json")


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer environment variable, enforcing ``[minimum, maximum]``."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in _TRUE_WORDS:
        return True
    if value in _FALSE_WORDS:
        return False
    raise ValueError(f"{name} must be a boolean word (true/false), got: {raw!r}")
