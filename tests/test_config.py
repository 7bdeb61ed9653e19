from __future__ import annotations

import os

import pytest

from autopilot.core.config import Settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for key in list(os.environ):
        if key.startswith("AUTOPILOT_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


def test_defaults(tmp_path):
    settings = Settings.from_env()
    assert settings.log_level == "info"
    assert settings.data_dir == str(tmp_path / ".autopilot")
    assert settings.log_dir == str(tmp_path / ".autopilot" / "logs")
    assert settings.max_blockers == 3
    assert settings.checkpoint_interval == 3
    assert settings.improvement_milestone == 5
    assert settings.max_improvement_cycles == 3
    assert settings.max_tasks == 50
    assert settings.max_duration_hours == 4.0
    assert settings.feedback_rotation_interval == 10
    assert settings.task_timeout_seconds == 1800
    assert settings.stale_heartbeat_minutes == 30
    assert settings.max_improvement_tasks == 5
    assert settings.worker_command is None
    assert settings.commit_enabled is True


def test_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("AUTOPILOT_DATA_DIR", str(tmp_path / "d"))
    monkeypatch.setenv("AUTOPILOT_MAX_TASKS", "7")
    monkeypatch.setenv("AUTOPILOT_MAX_DURATION_HOURS", "0.5")
    monkeypatch.setenv("AUTOPILOT_COMMIT", "off")
    monkeypatch.setenv("AUTOPILOT_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("AUTOPILOT_WORKER_COMMAND", "run-task {task_id}")

    settings = Settings.from_env()

    assert settings.tasks_dir == os.path.join(str(tmp_path / "d"), "tasks")
    assert settings.task_file("auth") == os.path.join(str(tmp_path / "d"), "tasks", "auth.json")
    assert settings.sessions_dir == os.path.join(str(tmp_path / "d"), "sessions")
    assert settings.max_tasks == 7
    assert settings.max_duration_hours == 0.5
    assert settings.commit_enabled is False
    assert settings.log_level == "debug"
    assert settings.worker_command == "run-task {task_id}"


@pytest.mark.parametrize(
    "name,value,message",
    [
        ("AUTOPILOT_MAX_TASKS", "lots", "AUTOPILOT_MAX_TASKS must be an integer"),
        ("AUTOPILOT_MAX_BLOCKERS", "0", "AUTOPILOT_MAX_BLOCKERS must be >= 1"),
        ("AUTOPILOT_MAX_IMPROVEMENT_TASKS", "6", "AUTOPILOT_MAX_IMPROVEMENT_TASKS must be <= 5"),
        ("AUTOPILOT_MAX_DURATION_HOURS", "0", "AUTOPILOT_MAX_DURATION_HOURS must be > 0"),
        ("AUTOPILOT_MAX_DURATION_HOURS", "soon", "AUTOPILOT_MAX_DURATION_HOURS must be a number"),
        ("AUTOPILOT_COMMIT", "maybe", "AUTOPILOT_COMMIT must be a boolean"),
        ("AUTOPILOT_LOG_LEVEL", "loud", "AUTOPILOT_LOG_LEVEL must be one of"),
    ],
)
def test_invalid_values_fail_fast(monkeypatch, name, value, message):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=message):
        Settings.from_env()


def test_zero_improvement_cycles_allowed(monkeypatch):
    monkeypatch.setenv("AUTOPILOT_MAX_IMPROVEMENT_CYCLES", "0")
    assert Settings.from_env().max_improvement_cycles == 0
