"""The scheduler: one task at a time, guarded, persisted after every step.

Each iteration checks guard rails, beats the heartbeat, picks the next
unblocked task, dispatches it to the worker with a per-task timeout and
records the outcome in the task list, session state and feedback log.
Every ``improvement_milestone`` completions the loop hands control to the
improvement cycle controller, which runs a nested loop of its own.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import threading
import time
from typing import TYPE_CHECKING, Any, Callable, Optional

from autopilot.core.config import Settings
from autopilot.core.feedback import FAILURE, SUCCESS, FeedbackEntry, FeedbackLog
from autopilot.core.graph import DONE, Task, TaskGraph, save_task_file
from autopilot.core.guards import GuardLimits, check_guard_rails, describe_breach, terminate_gracefully
from autopilot.core.interfaces import Committer, DispatchResult, Worker
from autopilot.core.logging_config import log_session_event
from autopilot.core.state import (
    BLOCKED,
    COMPLETED,
    IN_PROGRESS,
    PHASE_DEADLOCK,
    PHASE_DONE,
    PHASE_EXECUTING,
    PHASE_FINALIZING,
    PHASE_IMPROVING,
    TERMINATED,
    SessionState,
    StateStore,
)

if TYPE_CHECKING:
    from autopilot.core.improvement import ImprovementCycleController

logger = logging.getLogger("autopilot.loop")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LoopConfig:
    checkpoint_interval: int
    improvement_milestone: int
    feedback_rotation_interval: int
    task_timeout_seconds: float
    limits: GuardLimits

    @classmethod
    def from_settings(cls, settings: Settings) -> LoopConfig:
        return cls(
            checkpoint_interval=settings.checkpoint_interval,
            improvement_milestone=settings.improvement_milestone,
            feedback_rotation_interval=settings.feedback_rotation_interval,
            task_timeout_seconds=settings.task_timeout_seconds,
            limits=GuardLimits.from_settings(settings),
        )


@dataclass
class LoopResult:
    status: str                     # completed | terminated | blocked
    reason: Optional[str] = None
    message: str = ""
    completed: int = 0
    dispatched: int = 0
    cycles_run: int = 0
    session_id: str = ""


class ExecutionLoop:
    """Owns one task graph + session state + feedback log triple."""

    def __init__(
        self,
        *,
        graph: TaskGraph,
        state: SessionState,
        store: StateStore,
        feedback: FeedbackLog,
        worker: Worker,
        config: LoopConfig,
        committer: Optional[Committer] = None,
        task_file: Optional[str] = None,
        improvement: Optional["ImprovementCycleController"] = None,
        clock: Callable[[], datetime] = _now,
        on_heartbeat: Optional[Callable[[datetime], None]] = None,
    ) -> None:
        self.graph = graph
        self.state = state
        self.store = store
        self.feedback = feedback
        self.worker = worker
        self.config = config
        self.committer = committer
        self.task_file = task_file
        self.improvement = improvement
        self.clock = clock
        # Nested loops forward each heartbeat to the enclosing loop.
        self.on_heartbeat = on_heartbeat

    # ── Driver ───────────────────────────────────────────────

    def run(self) -> LoopResult:
        self.prepare()
        if self.state.phase == PHASE_IMPROVING and self._milestone_due():
            # Interrupted mid-cycle: the milestone was reached but never recorded.
            self._run_improvement_cycle(trigger="resume")
        while True:
            result = self.step()
            if result is not None:
                return result

    def prepare(self) -> None:
        """Mark the session running and persist; called by :meth:`run`."""
        self.feedback.ensure()
        self.state.total_tasks = len(self.graph)
        self.state.status = IN_PROGRESS
        if self.state.phase != PHASE_IMPROVING:
            self.state.phase = PHASE_EXECUTING
        self.state.heartbeat(self.clock())
        self.store.save(self.state)
        self._event("loop_started", total_tasks=self.state.total_tasks)

    def step(self) -> Optional[LoopResult]:
        """Run one iteration. Returns a result once the loop must stop."""
        state = self.state
        now = self.clock()

        reason = check_guard_rails(state, self.config.limits, now)
        if reason:
            return self._terminate(reason)

        self._beat(now)

        task = self.graph.next_unblocked()
        if task is None:
            if self.graph.all_terminal():
                return self._complete()
            return self._deadlock()

        self.graph.mark_in_progress(task.task_id)
        self._save_graph()
        state.current_task_id = task.task_id
        state.current_task_started_at = self.clock()
        state.phase = PHASE_EXECUTING
        self.store.save(state)
        self._event("dispatch_started", task_id=task.task_id, title=task.title, attempt=task.blocker_count + 1)

        started = time.monotonic()
        result = self._dispatch(task)
        duration = time.monotonic() - started

        if result.success:
            self._record_success(task, result, duration)
        else:
            self._record_failure(task, result, duration)

        state.total_dispatches += 1
        state.current_task_id = None
        state.current_task_started_at = None
        self.store.save(state)

        if result.success and self._milestone_due():
            self._run_improvement_cycle(trigger="milestone")
        return None

    # ── Dispatch ─────────────────────────────────────────────

    def _dispatch(self, task: Task) -> DispatchResult:
        """Call the worker on a daemon thread bounded by the per-task timeout.

        A call that outlives the timeout is failed, cancelled through the
        worker's optional ``cancel()`` and then waited for, so no second call
        starts while it is still running. Whatever it returns late is dropped.
        """
        outcome: dict[str, Any] = {}

        def _target() -> None:
            try:
                outcome["result"] = self.worker.dispatch(task)
            except Exception as exc:  # noqa: BLE001
                outcome["exc"] = exc

        timeout = self.config.task_timeout_seconds
        thread = threading.Thread(target=_target, name=f"autopilot-dispatch-{task.task_id}", daemon=True)
        thread.start()
        thread.join(timeout)

        if thread.is_alive():
            logger.error("Task %s timed out after %ss", task.task_id, timeout)
            self._cancel_worker(task)
            if thread.is_alive():
                logger.warning("Waiting for the timed-out call on task %s to return", task.task_id)
                thread.join()
            self._event("dispatch_timed_out", task_id=task.task_id, timeout_seconds=timeout)
            return DispatchResult(success=False, error=f"timed out after {timeout}s")
        if "exc" in outcome:
            exc = outcome["exc"]
            logger.error("Worker raised on task %s: %s", task.task_id, exc, exc_info=exc)
            return DispatchResult(success=False, error=f"{type(exc).__name__}: {exc}")
        result = outcome.get("result")
        if not isinstance(result, DispatchResult):
            return DispatchResult(success=False, error=f"worker returned {type(result).__name__}, expected DispatchResult")
        return result

    def _cancel_worker(self, task: Task) -> None:
        cancel = getattr(self.worker, "cancel", None)
        if cancel is None:
            return
        try:
            cancel()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Cancelling task %s failed: %s", task.task_id, exc)

    def _record_success(self, task: Task, result: DispatchResult, duration: float) -> None:
        state = self.state
        self.graph.mark_done(task.task_id)
        self._save_graph()
        state.completed_count += 1
        state.consecutive_failures = 0
        state.last_successful_task_id = task.task_id
        self.feedback.append(
            FeedbackEntry(
                task_id=task.task_id,
                title=task.title,
                outcome=SUCCESS,
                duration_seconds=duration,
                observations=result.observations,
                attempt=task.blocker_count + 1,
                ts=self.clock(),
            )
        )
        logger.info("Task %s done (%.1fs) [%d/%d]", task.task_id, duration, state.completed_count, state.total_tasks)
        self._event("task_done", task_id=task.task_id, duration_seconds=round(duration, 3))

        if state.completed_count % self.config.feedback_rotation_interval == 0:
            archive = self.feedback.rotate()
            state.feedback_rotations += 1
            self._event("feedback_rotated", archive=archive, rotations=state.feedback_rotations)

        if state.completed_count % self.config.checkpoint_interval == 0:
            self._commit(f"autopilot: checkpoint after {state.completed_count} tasks ({state.session_id})")

    def _record_failure(self, task: Task, result: DispatchResult, duration: float) -> None:
        state = self.state
        error = result.error or "worker reported failure"
        attempt = task.blocker_count + 1
        self.graph.mark_failed(task.task_id, reason=error)
        self._save_graph()
        state.consecutive_failures += 1
        state.last_error = f"task {task.task_id}: {error}"
        if task.skipped:
            state.skipped_count += 1
        self.feedback.append(
            FeedbackEntry(
                task_id=task.task_id,
                title=task.title,
                outcome=FAILURE,
                duration_seconds=duration,
                observations=result.observations,
                error=error,
                attempt=attempt,
                ts=self.clock(),
            )
        )
        logger.warning(
            "Task %s failed (attempt %d, consecutive failures %d): %s",
            task.task_id,
            attempt,
            state.consecutive_failures,
            error,
        )
        self._event("task_failed", task_id=task.task_id, attempt=attempt, error=error, skipped=task.skipped)

    # ── Milestones ───────────────────────────────────────────

    def _milestone_due(self) -> bool:
        state = self.state
        return (
            self.improvement is not None
            and state.completed_count > 0
            and state.completed_count % self.config.improvement_milestone == 0
            and state.cycles_run < state.max_improvement_cycles
            and state.last_cycle_completed_count != state.completed_count
        )

    def _run_improvement_cycle(self, trigger: str) -> None:
        if self.improvement is None:
            return
        state = self.state
        state.phase = PHASE_IMPROVING if trigger != "final" else PHASE_FINALIZING
        self.store.save(state)
        self._event("improvement_started", trigger=trigger, cycle=state.cycles_run + 1)

        report = self.improvement.run_cycle(
            outer_state=state,
            outer_feedback=self.feedback,
            outer_limits=self.config.limits,
            now=self.clock(),
            on_heartbeat=self._beat,
        )
        if report is not None:
            # Cycles run inside the nested loop count against the same cap.
            state.cycles_run += 1 + report.nested_cycles
            state.last_cycle_completed_count = state.completed_count
            self._event(
                "improvement_finished",
                cycle=state.cycles_run,
                tasks=report.task_count,
                status=report.status,
                nested_cycles=report.nested_cycles,
            )
        if trigger != "final":
            state.phase = PHASE_EXECUTING
        state.heartbeat(self.clock())
        self.store.save(state)

    # ── Endings ──────────────────────────────────────────────

    def _complete(self) -> LoopResult:
        state = self.state
        if self.improvement is not None and state.depth == 0 and state.cycles_run < state.max_improvement_cycles:
            self._run_improvement_cycle(trigger="final")
        state.status = COMPLETED
        state.phase = PHASE_DONE
        state.can_resume = False
        state.current_task_id = None
        state.current_task_started_at = None
        self.store.save(state)
        logger.info(
            "Session %s complete: %d done, %d skipped, %d dispatches",
            state.session_id,
            state.completed_count,
            state.skipped_count,
            state.total_dispatches,
        )
        self._event("session_completed", completed=state.completed_count, skipped=state.skipped_count)
        self._commit(f"autopilot: session {state.session_id} complete ({state.completed_count} tasks)")
        return self._result(COMPLETED, message="all tasks done or skipped")

    def _deadlock(self) -> LoopResult:
        state = self.state
        details = []
        for task in self.graph.blocked_tasks():
            unmet = [
                dep
                for dep in task.depends_on
                if dep not in self.graph or self.graph.get(dep).status != DONE
            ]
            details.append(f"{task.task_id} (waiting on {', '.join(unmet)})")
        message = "DEADLOCK: remaining tasks are blocked: " + "; ".join(details)
        state.status = BLOCKED
        state.phase = PHASE_DEADLOCK
        state.last_error = message
        state.can_resume = False
        self.store.save(state)
        logger.error("Session %s: %s", state.session_id, message)
        self._event("session_deadlocked", blocked=[t.task_id for t in self.graph.blocked_tasks()])
        return self._result(BLOCKED, message=message)

    def _terminate(self, reason: str) -> LoopResult:
        message = describe_breach(reason, self.state, self.config.limits, self.clock())
        terminate_gracefully(self.state, self.store, reason, message)
        self._event("session_terminated", reason=reason, message=message)
        self._commit(f"autopilot: session {self.state.session_id} stopped ({reason})")
        return self._result(TERMINATED, reason=reason, message=message)

    # ── Helpers ──────────────────────────────────────────────

    def _result(self, status: str, reason: Optional[str] = None, message: str = "") -> LoopResult:
        return LoopResult(
            status=status,
            reason=reason,
            message=message,
            completed=self.state.completed_count,
            dispatched=self.state.total_dispatches,
            cycles_run=self.state.cycles_run,
            session_id=self.state.session_id,
        )

    def _beat(self, now: datetime) -> None:
        self.state.heartbeat(now)
        self.store.save(self.state)
        if self.on_heartbeat is not None:
            self.on_heartbeat(now)

    def _save_graph(self) -> None:
        if self.task_file:
            save_task_file(self.graph, self.task_file)

    def _commit(self, message: str) -> None:
        if self.committer is None:
            return
        try:
            result = self.committer.commit(message)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Commit failed (%s): %s", message, exc)
            return
        if not result.success:
            logger.warning("Commit failed (%s): %s", message, result.error or "unknown error")
            return
        self._event("committed", message=message, commit_hash=result.commit_hash)

    def _event(self, event: str, **fields: Any) -> None:
        log_session_event(self.state.session_id, event, depth=self.state.depth, **fields)
