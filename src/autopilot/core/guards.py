"""Guard rails: stateless checks that decide whether a session must stop."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Optional

from autopilot.core.config import STALL_THRESHOLD, Settings
from autopilot.core.state import PHASE_TERMINATED, TERMINATED, SessionState, StateStore

logger = logging.getLogger("autopilot.guards")

TIME_LIMIT = "TIME_LIMIT"
TASK_LIMIT = "TASK_LIMIT"
STALL = "STALL"
TERMINATION_REASONS = {TIME_LIMIT, TASK_LIMIT, STALL}


@dataclass(frozen=True)
class GuardLimits:
    max_tasks: int
    max_duration_hours: float
    stall_threshold: int = STALL_THRESHOLD

    @classmethod
    def from_settings(cls, settings: Settings) -> GuardLimits:
        return cls(max_tasks=settings.max_tasks, max_duration_hours=settings.max_duration_hours)


def time_limit_exceeded(state: SessionState, limits: GuardLimits, now: Optional[datetime] = None) -> bool:
    return state.elapsed_hours(now) > limits.max_duration_hours


def task_limit_reached(state: SessionState, limits: GuardLimits) -> bool:
    return state.total_dispatches >= limits.max_tasks


def stalled(state: SessionState, limits: GuardLimits) -> bool:
    return state.consecutive_failures >= limits.stall_threshold


def check_guard_rails(state: SessionState, limits: GuardLimits, now: Optional[datetime] = None) -> Optional[str]:
    """Return the first breached termination reason, or None."""
    if time_limit_exceeded(state, limits, now):
        return TIME_LIMIT
    if task_limit_reached(state, limits):
        return TASK_LIMIT
    if stalled(state, limits):
        return STALL
    return None


def describe_breach(reason: str, state: SessionState, limits: GuardLimits, now: Optional[datetime] = None) -> str:
    if reason == TIME_LIMIT:
        return f"{TIME_LIMIT}: ran {state.elapsed_hours(now):.2f}h, limit {limits.max_duration_hours}h"
    if reason == TASK_LIMIT:
        return f"{TASK_LIMIT}: {state.total_dispatches} dispatches, limit {limits.max_tasks}"
    if reason == STALL:
        return f"{STALL}: {state.consecutive_failures} consecutive failures"
    return reason


def terminate_gracefully(state: SessionState, store: StateStore, reason: str, message: str = "") -> None:
    """Mark the session terminated-but-resumable and persist before returning."""
    state.status = TERMINATED
    state.phase = PHASE_TERMINATED
    state.termination_reason = reason
    state.last_error = message or reason
    state.can_resume = True
    store.save(state)
    logger.warning("Session %s terminated: %s", state.session_id, state.last_error)
