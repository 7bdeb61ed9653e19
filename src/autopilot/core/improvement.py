"""Milestone-triggered improvement cycles.

A cycle reads the outer session's feedback, turns the notable outcomes into
a handful of follow-up tasks and runs them through a nested execution loop
with its own task list, state and feedback under ``cycles/cycle-NN/``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import os
from statistics import median
from typing import Callable, Dict, List, Optional

from autopilot.core.config import IMPROVEMENT_TASK_CAP, MAX_NESTING_DEPTH, Settings
from autopilot.core.feedback import FeedbackEntry, FeedbackLog
from autopilot.core.graph import Task, TaskGraph, save_task_file
from autopilot.core.guards import GuardLimits
from autopilot.core.interfaces import Committer, Worker
from autopilot.core.loop import ExecutionLoop, LoopConfig
from autopilot.core.state import COMPLETED, PHASE_DONE, SessionState, StateStore

logger = logging.getLogger("autopilot.improvement")

# A success slower than this multiple of the median is worth a look.
SLOW_FACTOR = 2.0
_MIN_SAMPLES_FOR_SLOW = 3


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CycleReport:
    cycle: int
    depth: int
    task_count: int
    status: str                     # empty | completed | terminated | blocked
    completed: int = 0
    directory: str = ""
    nested_cycles: int = 0          # cycles the nested loop ran itself


def analyze_feedback(entries: List[FeedbackEntry], cap: int = IMPROVEMENT_TASK_CAP) -> List[Task]:
    """Derive at most *cap* improvement tasks from feedback entries.

    Repeatedly failing tasks come first (priority 0), then unusually slow
    successes (priority 2). When neither shows up but there was work to
    review, a single general review task is produced (priority 3).
    """
    cap = max(0, min(cap, IMPROVEMENT_TASK_CAP))
    if not entries or cap == 0:
        return []

    by_task: Dict[str, List[FeedbackEntry]] = {}
    for entry in entries:
        by_task.setdefault(entry.task_id, []).append(entry)

    proposals: List[tuple[int, str, str]] = []

    for task_id, history in by_task.items():
        failures = [e for e in history if not e.succeeded]
        if len(failures) < 2:
            continue
        last = failures[-1]
        recovered = history[-1].succeeded
        title = f"Investigate repeated failures of task {task_id}: {last.title}".strip()
        description = (
            f"Task {task_id} failed {len(failures)} times"
            + (" before succeeding" if recovered else "")
            + f". Last error: {last.error or 'none recorded'}"
        )
        if last.observations:
            description += f"\nObservations: {last.observations}"
        proposals.append((0, title, description))

    durations = [e.duration_seconds for e in entries if e.succeeded]
    if len(durations) >= _MIN_SAMPLES_FOR_SLOW:
        typical = median(durations)
        for task_id, history in by_task.items():
            slow = [e for e in history if e.succeeded and typical > 0 and e.duration_seconds > SLOW_FACTOR * typical]
            if not slow:
                continue
            entry = slow[-1]
            proposals.append(
                (
                    2,
                    f"Review slow task {task_id}: {entry.title}".strip(),
                    f"Task {task_id} took {entry.duration_seconds:.0f}s against a median of {typical:.0f}s.",
                )
            )

    if not proposals:
        succeeded = sum(1 for e in entries if e.succeeded)
        proposals.append(
            (
                3,
                "Review recent work for follow-ups",
                f"{succeeded} of {len(entries)} dispatches succeeded across {len(by_task)} tasks.",
            )
        )

    tasks: List[Task] = []
    for index, (priority, title, description) in enumerate(proposals[:cap], start=1):
        tasks.append(Task(task_id=str(index), title=title, description=description, priority=priority))
    return tasks


class ImprovementCycleController:
    """Runs improvement cycles for a loop at nesting ``depth``."""

    def __init__(
        self,
        *,
        settings: Settings,
        worker: Worker,
        cycles_dir: str,
        committer: Optional[Committer] = None,
        depth: int = 0,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.settings = settings
        self.worker = worker
        self.committer = committer
        self.cycles_dir = cycles_dir
        self.depth = depth
        self.clock = clock

    def cycle_dir(self, cycle: int) -> str:
        return os.path.join(self.cycles_dir, f"cycle-{cycle:02d}")

    def run_cycle(
        self,
        *,
        outer_state: SessionState,
        outer_feedback: FeedbackLog,
        outer_limits: GuardLimits,
        now: Optional[datetime] = None,
        on_heartbeat: Optional[Callable[[datetime], None]] = None,
    ) -> Optional[CycleReport]:
        """Run one nested cycle. Returns None when the depth cap refuses it.

        *on_heartbeat* is called on every nested iteration so the outer
        session's heartbeat keeps moving while the cycle runs.
        """
        child_depth = self.depth + 1
        if child_depth > MAX_NESTING_DEPTH:
            logger.warning(
                "Improvement cycle refused for %s: depth %d exceeds %d",
                outer_state.session_id,
                child_depth,
                MAX_NESTING_DEPTH,
            )
            return None

        now = now or self.clock()
        cycle = outer_state.cycles_run + 1
        directory = self.cycle_dir(cycle)
        entries = self._entries_since_previous_cycle(outer_feedback, cycle)
        tasks = analyze_feedback(entries, cap=self.settings.max_improvement_tasks)
        logger.info(
            "Improvement cycle %d for %s (depth %d): %d feedback entries -> %d tasks",
            cycle,
            outer_state.session_id,
            child_depth,
            len(entries),
            len(tasks),
        )
        os.makedirs(directory, exist_ok=True)
        graph = TaskGraph(
            spec_id=f"{outer_state.spec_id}-improve-{cycle:02d}",
            max_blockers=self.settings.max_blockers,
        )
        for task in tasks:
            graph.add_task(task)
        task_file = os.path.join(directory, "tasks.json")
        save_task_file(graph, task_file)

        state = SessionState(
            session_id=f"{outer_state.session_id}.cycle-{cycle:02d}",
            spec_id=graph.spec_id,
            depth=child_depth,
            created_at=now,
            started_at=now,
            last_heartbeat=now,
            max_improvement_cycles=max(0, outer_state.max_improvement_cycles - cycle),
        )
        store = StateStore(os.path.join(directory, "state.json"))
        if not tasks:
            # Nothing to improve; still leave a marker so the next cycle's window starts here.
            state.status = COMPLETED
            state.phase = PHASE_DONE
            state.can_resume = False
            store.save(state)
            return CycleReport(cycle=cycle, depth=child_depth, task_count=0, status="empty", directory=directory)

        remaining_hours = outer_limits.max_duration_hours - outer_state.elapsed_hours(now)
        limits = GuardLimits(
            max_tasks=len(tasks) * self.settings.max_blockers,
            max_duration_hours=remaining_hours,
            stall_threshold=outer_limits.stall_threshold,
        )
        nested = None
        if child_depth < MAX_NESTING_DEPTH:
            nested = ImprovementCycleController(
                settings=self.settings,
                worker=self.worker,
                committer=self.committer,
                cycles_dir=os.path.join(directory, "cycles"),
                depth=child_depth,
                clock=self.clock,
            )
        loop = ExecutionLoop(
            graph=graph,
            state=state,
            store=store,
            feedback=FeedbackLog(os.path.join(directory, "feedback.jsonl"), session_id=state.session_id),
            worker=self.worker,
            committer=self.committer,
            config=LoopConfig(
                checkpoint_interval=self.settings.checkpoint_interval,
                improvement_milestone=self.settings.improvement_milestone,
                feedback_rotation_interval=self.settings.feedback_rotation_interval,
                task_timeout_seconds=self.settings.task_timeout_seconds,
                limits=limits,
            ),
            task_file=task_file,
            improvement=nested,
            clock=self.clock,
            on_heartbeat=on_heartbeat,
        )
        result = loop.run()
        logger.info("Improvement cycle %d finished: %s (%d done)", cycle, result.status, result.completed)
        return CycleReport(
            cycle=cycle,
            depth=child_depth,
            task_count=len(tasks),
            status=result.status,
            completed=result.completed,
            directory=directory,
            nested_cycles=result.cycles_run,
        )

    def _entries_since_previous_cycle(self, feedback: FeedbackLog, cycle: int) -> List[FeedbackEntry]:
        entries = feedback.all_entries()
        # Numbers skip the cycles run inside nested loops; use the latest one on disk.
        for previous_cycle in range(cycle - 1, 0, -1):
            previous = StateStore(os.path.join(self.cycle_dir(previous_cycle), "state.json"))
            if previous.exists():
                since = previous.load().created_at
                return [entry for entry in entries if entry.ts >= since]
        return entries
