from __future__ import annotations

from datetime import datetime, timedelta, timezone
import os
import time
from typing import Optional, Union

import pytest

from autopilot.core.config import Settings
from autopilot.core.graph import Task
from autopilot.core.interfaces import CommitResult, DispatchResult


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


Outcome = Union[bool, DispatchResult]


class ScriptedWorker:
    """Succeeds by default; ``outcomes[task_id]`` queues per-task results."""

    def __init__(self, default: bool = True, clock: Optional[FakeClock] = None, step_hours: float = 0.0) -> None:
        self.default = default
        self.clock = clock
        self.step_hours = step_hours
        self.outcomes: dict[str, list[Outcome]] = {}
        self.calls: list[Task] = []
        self.sleep = 0.0

    @property
    def called_ids(self) -> list[str]:
        return [task.task_id for task in self.calls]

    @property
    def called_titles(self) -> list[str]:
        return [task.title for task in self.calls]

    def dispatch(self, task: Task) -> DispatchResult:
        self.calls.append(task)
        if self.sleep:
            time.sleep(self.sleep)
        if self.clock is not None and self.step_hours:
            self.clock.advance(hours=self.step_hours)
        queued = self.outcomes.get(task.task_id)
        outcome: Outcome = queued.pop(0) if queued else self.default
        if isinstance(outcome, DispatchResult):
            return outcome
        if outcome:
            return DispatchResult(success=True, observations=f"did {task.title}")
        return DispatchResult(success=False, error=f"{task.title} broke")


class RecordingCommitter:
    def __init__(self, success: bool = True, raises: bool = False) -> None:
        self.success = success
        self.raises = raises
        self.messages: list[str] = []

    def commit(self, message: str) -> CommitResult:
        self.messages.append(message)
        if self.raises:
            raise RuntimeError("git exploded")
        if not self.success:
            return CommitResult(success=False, error="rejected")
        return CommitResult(success=True, commit_hash=f"{len(self.messages):040d}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def worker():
    return ScriptedWorker()


@pytest.fixture
def committer():
    return RecordingCommitter()


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides) -> Settings:
        data_dir = str(tmp_path / "data")
        values = dict(
            log_level="info",
            data_dir=data_dir,
            log_dir=os.path.join(data_dir, "logs"),
            max_blockers=3,
            checkpoint_interval=3,
            improvement_milestone=5,
            max_improvement_cycles=3,
            max_tasks=50,
            max_duration_hours=4.0,
            feedback_rotation_interval=10,
            task_timeout_seconds=30,
            stale_heartbeat_minutes=30,
            max_improvement_tasks=5,
            worker_command=None,
            repo_dir=str(tmp_path),
            commit_enabled=False,
        )
        values.update(overrides)
        return Settings(**values)

    return _make
