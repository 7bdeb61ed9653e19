"""Crash recovery: bring a persisted session back to a runnable state."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Optional

from autopilot.core.feedback import FeedbackLog
from autopilot.core.graph import DONE as TASK_DONE
from autopilot.core.graph import IN_PROGRESS as TASK_IN_PROGRESS
from autopilot.core.graph import TaskGraph
from autopilot.core.guards import STALL
from autopilot.core.logging_config import log_session_event
from autopilot.core.state import IN_PROGRESS, RESUMABLE_STATUSES, SessionState, StateStore

logger = logging.getLogger("autopilot.recovery")


class SessionActiveError(RuntimeError):
    """The state file shows a live writer (fresh heartbeat)."""


class SessionNotResumableError(RuntimeError):
    pass


def is_stale(state: SessionState, threshold: timedelta, now: Optional[datetime] = None) -> bool:
    return state.heartbeat_age_seconds(now) > threshold.total_seconds()


def recover_session(
    store: StateStore,
    graph: TaskGraph,
    stale_after: timedelta,
    now: Optional[datetime] = None,
    force: bool = False,
    feedback: Optional[FeedbackLog] = None,
) -> SessionState:
    """Load the session state and undo any dispatch interrupted by a crash.

    An ``in_progress`` session whose heartbeat is younger than *stale_after*
    is assumed to still have a live loop and is refused unless *force* is
    set. Otherwise the task recorded as in flight (and any other task left
    ``in_progress``) goes back to ``pending`` without counting a failure.

    The task list is written before the state file, so a crash between the
    two leaves the state behind. Progress counts are rebuilt from the graph,
    an in-flight task the graph already shows finished counts as a
    dispatch, and the rotation count follows the archives in *feedback*.
    The run clock restarts and a stalled session gets a clean failure
    streak; the dispatch count is kept, so ``max_tasks`` still binds.
    """
    now = now or datetime.now(timezone.utc)
    state = store.load()

    if state.status not in RESUMABLE_STATUSES or not state.can_resume:
        raise SessionNotResumableError(
            f"Session {state.session_id} is {state.status} and cannot be resumed"
            + (f": {state.last_error}" if state.last_error else "")
        )
    if state.status == IN_PROGRESS and not is_stale(state, stale_after, now) and not force:
        raise SessionActiveError(
            f"Session {state.session_id} heartbeat is {state.heartbeat_age_seconds(now):.0f}s old; "
            "another process may still be running it (use force to override)"
        )

    in_flight = graph.get(state.current_task_id) if state.current_task_id in graph else None
    if in_flight is not None and (in_flight.status == TASK_DONE or in_flight.skipped):
        # Outcome reached the task list but not the state file.
        state.total_dispatches += 1
        if in_flight.status == TASK_DONE:
            state.consecutive_failures = 0
            state.last_successful_task_id = in_flight.task_id
        logger.warning(
            "Session %s: task %s finished before the crash; counting its dispatch",
            state.session_id,
            in_flight.task_id,
        )

    reset = []
    if in_flight is not None and graph.reset_in_progress(in_flight.task_id):
        reset.append(in_flight.task_id)
    for task in graph.list_tasks(TASK_IN_PROGRESS):
        if graph.reset_in_progress(task.task_id):
            reset.append(task.task_id)
    if reset:
        logger.warning("Session %s: reset interrupted task(s) %s to pending", state.session_id, ", ".join(reset))

    counts = graph.count_by_status()
    if (counts[TASK_DONE], counts["skipped"]) != (state.completed_count, state.skipped_count):
        logger.warning(
            "Session %s: progress counts %d/%d rebuilt from task list as %d/%d (done/skipped)",
            state.session_id,
            state.completed_count,
            state.skipped_count,
            counts[TASK_DONE],
            counts["skipped"],
        )
    state.total_tasks = len(graph)
    state.completed_count = counts[TASK_DONE]
    state.skipped_count = counts["skipped"]
    if feedback is not None:
        state.feedback_rotations = len(feedback.archives())

    if state.termination_reason == STALL:
        state.consecutive_failures = 0
    state.current_task_id = None
    state.current_task_started_at = None
    state.status = IN_PROGRESS
    state.termination_reason = None
    state.started_at = now
    state.heartbeat(now)
    store.save(state)
    log_session_event(state.session_id, "session_recovered", depth=state.depth, reset_tasks=reset, forced=force)
    return state
