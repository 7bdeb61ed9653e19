"""Tests for the execution loop: ordering, guard rails, persistence, milestones."""
from __future__ import annotations

from datetime import timedelta
import os
import threading
import time

import pytest

from autopilot.core.feedback import FeedbackLog, read_entries
from autopilot.core.fileio import read_json
from autopilot.core.graph import DONE, Task, TaskGraph, load_task_file
from autopilot.core.guards import STALL, TASK_LIMIT, TIME_LIMIT
from autopilot.core.improvement import ImprovementCycleController
from autopilot.core.interfaces import DispatchResult
from autopilot.core.loop import ExecutionLoop, LoopConfig
from autopilot.core.state import (
    BLOCKED,
    COMPLETED,
    IN_PROGRESS,
    PHASE_DEADLOCK,
    PHASE_DONE,
    TERMINATED,
    SessionState,
    StateStore,
)

from conftest import RecordingCommitter, ScriptedWorker


def _tasks(n: int) -> list[tuple[str, int, list[str]]]:
    return [(str(i), 2, []) for i in range(1, n + 1)]


@pytest.fixture
def build_loop(tmp_path, make_settings, clock):
    def _build(specs, worker, committer=None, improvement=False, **overrides) -> ExecutionLoop:
        settings = make_settings(**overrides)
        graph = TaskGraph(spec_id="demo", max_blockers=settings.max_blockers)
        for task_id, priority, deps in specs:
            graph.add_task(Task(task_id=task_id, title=f"task {task_id}", priority=priority, depends_on=list(deps)))
        session_dir = tmp_path / "session"
        state = SessionState(
            session_id="s-1",
            spec_id="demo",
            created_at=clock(),
            started_at=clock(),
            last_heartbeat=clock(),
            max_improvement_cycles=settings.max_improvement_cycles,
        )
        controller = None
        if improvement:
            controller = ImprovementCycleController(
                settings=settings,
                worker=worker,
                committer=committer,
                cycles_dir=str(session_dir / "cycles"),
                clock=clock,
            )
        return ExecutionLoop(
            graph=graph,
            state=state,
            store=StateStore(str(session_dir / "state.json")),
            feedback=FeedbackLog(str(session_dir / "feedback.jsonl"), session_id="s-1"),
            worker=worker,
            committer=committer,
            config=LoopConfig.from_settings(settings),
            task_file=str(tmp_path / "tasks" / "demo.json"),
            improvement=controller,
            clock=clock,
        )

    return _build


# ── Happy path ───────────────────────────────────────────────

class TestCompletion:
    def test_runs_in_dependency_and_priority_order(self, build_loop, worker):
        loop = build_loop([("1", 1, []), ("2", 0, ["1"]), ("3", 2, [])], worker)
        result = loop.run()

        assert result.status == COMPLETED
        assert worker.called_ids == ["1", "2", "3"]
        assert result.completed == 3
        assert result.dispatched == 3

    def test_final_state_is_persisted(self, build_loop, worker):
        loop = build_loop(_tasks(2), worker)
        loop.run()

        state = loop.store.load()
        assert state.status == COMPLETED
        assert state.phase == PHASE_DONE
        assert state.can_resume is False
        assert state.current_task_id is None
        assert state.last_successful_task_id == "2"
        graph = load_task_file(loop.task_file)
        assert all(task.status == DONE for task in graph.tasks())

    def test_feedback_entry_per_dispatch(self, build_loop, worker):
        worker.outcomes["1"] = [False]
        loop = build_loop(_tasks(2), worker)
        loop.run()

        entries = loop.feedback.entries()
        assert [(e.task_id, e.outcome) for e in entries] == [("1", "failure"), ("1", "success"), ("2", "success")]
        assert entries[0].error == "task 1 broke"
        assert entries[1].attempt == 2
        assert entries[2].observations == "did task 2"

    def test_same_outcomes_give_same_order(self, build_loop):
        specs = [("a", 1, []), ("b", 0, ["a"]), ("c", 1, []), ("d", 0, ["c", "b"])]
        orders = []
        for _ in range(2):
            worker = ScriptedWorker()
            worker.outcomes["c"] = [False]
            build_loop(specs, worker).run()
            orders.append(worker.called_ids)
        assert orders[0] == orders[1] == ["a", "b", "c", "c", "d"]


# ── Guard rails ──────────────────────────────────────────────

class TestGuardRails:
    def test_task_limit_after_third_dispatch(self, build_loop, worker):
        worker.outcomes["2"] = [False]
        loop = build_loop(_tasks(5), worker, max_tasks=3)
        result = loop.run()

        assert result.status == TERMINATED
        assert result.reason == TASK_LIMIT
        assert len(worker.calls) == 3
        state = loop.store.load()
        assert state.status == TERMINATED
        assert state.termination_reason == TASK_LIMIT
        assert state.last_error.startswith("TASK_LIMIT")
        assert state.can_resume is True

    def test_stall_after_five_consecutive_failures(self, build_loop):
        worker = ScriptedWorker(default=False)
        loop = build_loop(_tasks(6), worker, max_blockers=10)
        result = loop.run()

        assert result.reason == STALL
        assert len(worker.calls) == 5
        assert loop.state.consecutive_failures == 5

    def test_success_resets_failure_streak(self, build_loop, worker):
        worker.outcomes["1"] = [False, False, False, False, True]
        worker.outcomes["2"] = [False, False, False, False, True]
        loop = build_loop(_tasks(2), worker, max_blockers=10)
        result = loop.run()

        assert result.status == COMPLETED
        assert len(worker.calls) == 10
        assert loop.state.consecutive_failures == 0

    def test_time_limit(self, build_loop, clock):
        worker = ScriptedWorker(clock=clock, step_hours=2)
        loop = build_loop(_tasks(5), worker, max_duration_hours=4.0)
        result = loop.run()

        assert result.reason == TIME_LIMIT
        assert len(worker.calls) == 3

    def test_termination_commits_and_survives_commit_failure(self, build_loop, worker):
        committer = RecordingCommitter(raises=True)
        loop = build_loop(_tasks(5), worker, committer=committer, max_tasks=2, checkpoint_interval=10)
        result = loop.run()

        assert result.reason == TASK_LIMIT
        assert committer.messages == ["autopilot: session s-1 stopped (TASK_LIMIT)"]


# ── Failures, skips, deadlock ────────────────────────────────

class TestFailures:
    def test_repeated_failure_skips_task(self, build_loop):
        worker = ScriptedWorker()
        worker.outcomes["1"] = [False, False]
        loop = build_loop(_tasks(2), worker, max_blockers=2)
        result = loop.run()

        assert result.status == COMPLETED
        assert worker.called_ids == ["1", "1", "2"]
        task = loop.graph.get("1")
        assert task.skipped
        assert task.skip_reason == "exceeded 2 failed attempts: task 1 broke"
        assert loop.state.skipped_count == 1
        assert loop.state.completed_count == 1

    def test_skipped_dependency_deadlocks(self, build_loop, worker):
        worker.outcomes["1"] = [False, False]
        loop = build_loop([("1", 1, []), ("2", 1, ["1"])], worker, max_blockers=2)
        result = loop.run()

        assert result.status == BLOCKED
        state = loop.store.load()
        assert state.status == BLOCKED
        assert state.phase == PHASE_DEADLOCK
        assert state.can_resume is False
        assert "2 (waiting on 1)" in state.last_error
        assert worker.called_ids == ["1", "1"]

    def test_worker_exception_is_a_failure(self, build_loop):
        class ExplodingWorker:
            def dispatch(self, task):
                raise RuntimeError("worker crashed")

        loop = build_loop(_tasks(1), ExplodingWorker(), max_tasks=1)
        result = loop.run()

        assert result.reason == TASK_LIMIT
        assert loop.graph.get("1").blocker_count == 1
        assert loop.feedback.entries()[0].error == "RuntimeError: worker crashed"

    def test_timeout_is_a_failure(self, build_loop, worker):
        worker.sleep = 1.0
        loop = build_loop(_tasks(1), worker, max_tasks=1, task_timeout_seconds=0.05)
        loop.run()

        entry = loop.feedback.entries()[0]
        assert entry.outcome == "failure"
        assert "timed out" in entry.error
        assert loop.graph.get("1").blocker_count == 1

    def test_timed_out_call_finishes_before_next_dispatch(self, build_loop):
        class SlowWorker:
            def __init__(self):
                self.lock = threading.Lock()
                self.running = 0
                self.max_running = 0
                self.calls = 0

            def dispatch(self, task):
                with self.lock:
                    self.calls += 1
                    self.running += 1
                    self.max_running = max(self.max_running, self.running)
                time.sleep(0.3)
                with self.lock:
                    self.running -= 1
                return DispatchResult(success=True)

        worker = SlowWorker()
        loop = build_loop(_tasks(1), worker, max_tasks=2, task_timeout_seconds=0.05)
        result = loop.run()

        assert result.reason == TASK_LIMIT
        assert worker.calls == 2
        assert worker.max_running == 1
        assert [e.outcome for e in loop.feedback.entries()] == ["failure", "failure"]

    def test_timed_out_call_is_cancelled(self, build_loop):
        class CancellableWorker:
            def __init__(self):
                self.release = threading.Event()
                self.cancelled = 0

            def dispatch(self, task):
                self.release.wait(10)
                return DispatchResult(success=True)

            def cancel(self):
                self.cancelled += 1
                self.release.set()

        worker = CancellableWorker()
        loop = build_loop(_tasks(1), worker, max_tasks=1, task_timeout_seconds=0.05)
        started = time.monotonic()
        loop.run()

        assert worker.cancelled == 1
        assert time.monotonic() - started < 5
        assert "timed out" in loop.feedback.entries()[0].error

    def test_non_result_return_is_a_failure(self, build_loop):
        class SloppyWorker:
            def dispatch(self, task):
                return {"success": True}

        loop = build_loop(_tasks(1), SloppyWorker(), max_tasks=1)
        loop.run()
        assert "expected DispatchResult" in loop.feedback.entries()[0].error


# ── Persistence ──────────────────────────────────────────────

class TestPersistence:
    def test_in_flight_task_is_recorded_before_dispatch(self, build_loop, tmp_path):
        seen = {}

        class InspectingWorker:
            def dispatch(self, task):
                seen["state"] = read_json(str(tmp_path / "session" / "state.json"))
                seen["tasks"] = read_json(str(tmp_path / "tasks" / "demo.json"))
                return DispatchResult(success=True)

        loop = build_loop(_tasks(1), InspectingWorker())
        loop.run()

        assert seen["state"]["current_task_id"] == "1"
        assert seen["state"]["current_task_started_at"] is not None
        assert seen["state"]["status"] == IN_PROGRESS
        assert seen["tasks"]["tasks"][0]["status"] == "in_progress"

    def test_each_step_persists(self, build_loop, worker):
        loop = build_loop(_tasks(3), worker)
        loop.prepare()
        assert loop.step() is None

        state = loop.store.load()
        assert state.total_dispatches == 1
        assert state.completed_count == 1
        assert state.current_task_id is None
        assert load_task_file(loop.task_file).get("1").status == DONE

    def test_checkpoint_commits(self, build_loop, worker, committer):
        loop = build_loop(_tasks(7), worker, committer=committer, checkpoint_interval=3)
        loop.run()

        assert committer.messages == [
            "autopilot: checkpoint after 3 tasks (s-1)",
            "autopilot: checkpoint after 6 tasks (s-1)",
            "autopilot: session s-1 complete (7 tasks)",
        ]

    def test_failed_commit_does_not_stop_loop(self, build_loop, worker):
        committer = RecordingCommitter(success=False)
        loop = build_loop(_tasks(4), worker, committer=committer, checkpoint_interval=1)
        assert loop.run().status == COMPLETED
        assert len(committer.messages) == 5

    def test_feedback_rotation(self, build_loop, worker):
        loop = build_loop(_tasks(5), worker, feedback_rotation_interval=2)
        loop.run()

        archives = loop.feedback.archives()
        assert [os.path.basename(p) for p in archives] == ["batch-0001.jsonl", "batch-0002.jsonl"]
        assert [e.task_id for e in read_entries(archives[0])] == ["1", "2"]
        assert [e.task_id for e in read_entries(archives[1])] == ["3", "4"]
        assert [e.task_id for e in loop.feedback.entries()] == ["5"]
        assert loop.state.feedback_rotations == 2


# ── Milestones ───────────────────────────────────────────────

def _outer_counts_at_improvement(worker: ScriptedWorker) -> list[int]:
    """Outer tasks dispatched before each improvement-task dispatch."""
    counts = []
    outer = 0
    for title in worker.called_titles:
        if title.startswith("task "):
            outer += 1
        else:
            counts.append(outer)
    return counts


class TestMilestones:
    def test_cycles_at_each_milestone_up_to_cap(self, build_loop, worker, tmp_path):
        loop = build_loop(_tasks(20), worker, improvement=True, improvement_milestone=5, max_improvement_cycles=3)
        result = loop.run()

        assert result.status == COMPLETED
        assert loop.state.cycles_run == 3
        assert sorted(set(_outer_counts_at_improvement(worker))) == [5, 10, 15]
        cycles = sorted(os.listdir(tmp_path / "session" / "cycles"))
        assert cycles == ["cycle-01", "cycle-02", "cycle-03"]

    def test_exactly_one_cycle_after_first_milestone(self, build_loop, worker):
        loop = build_loop(_tasks(20), worker, improvement=True, improvement_milestone=5, max_improvement_cycles=3)
        loop.prepare()
        for _ in range(5):
            loop.step()
        assert loop.state.cycles_run == 1
        assert loop.state.last_cycle_completed_count == 5
        for _ in range(4):
            loop.step()
        assert loop.state.cycles_run == 1

    def test_failed_dispatch_does_not_retrigger_milestone(self, build_loop, worker):
        worker.outcomes["6"] = [False]
        loop = build_loop(_tasks(7), worker, improvement=True, improvement_milestone=5, max_improvement_cycles=3)
        loop.prepare()
        for _ in range(6):
            loop.step()
        assert loop.state.completed_count == 5
        assert loop.state.cycles_run == 1

    def test_final_cycle_runs_at_session_end(self, build_loop, worker):
        loop = build_loop(_tasks(2), worker, improvement=True, improvement_milestone=5, max_improvement_cycles=3)
        loop.run()

        assert loop.state.cycles_run == 1
        assert _outer_counts_at_improvement(worker) == [2]

    def test_no_cycles_when_cap_is_zero(self, build_loop, worker):
        loop = build_loop(_tasks(5), worker, improvement=True, improvement_milestone=5, max_improvement_cycles=0)
        loop.run()
        assert loop.state.cycles_run == 0
        assert worker.called_ids == ["1", "2", "3", "4", "5"]

    def test_nested_cycles_count_against_session_cap(self, build_loop, worker, tmp_path):
        loop = build_loop(_tasks(2), worker, improvement=True, improvement_milestone=1, max_improvement_cycles=3)
        loop.run()

        assert loop.state.cycles_run == 3
        cycles_dir = tmp_path / "session" / "cycles"
        assert sorted(os.listdir(cycles_dir)) == ["cycle-01", "cycle-03"]
        assert os.listdir(cycles_dir / "cycle-01" / "cycles") == ["cycle-01"]
        assert not os.path.exists(cycles_dir / "cycle-03" / "cycles")

    def test_outer_heartbeat_advances_during_cycle(self, build_loop, clock, tmp_path):
        seen = []

        class HeartbeatWatchingWorker(ScriptedWorker):
            def dispatch(self, task):
                if not task.title.startswith("task "):
                    seen.append(read_json(str(tmp_path / "session" / "state.json"))["last_heartbeat"])
                return super().dispatch(task)

        start = clock()
        worker = HeartbeatWatchingWorker(clock=clock, step_hours=0.25)
        loop = build_loop(_tasks(5), worker, improvement=True, improvement_milestone=5, max_improvement_cycles=1)
        loop.run()

        assert seen
        assert seen[0] == (start + timedelta(hours=1.25)).isoformat()

    def test_cycle_request_without_controller_is_ignored(self, build_loop, worker):
        loop = build_loop(_tasks(1), worker)
        loop.prepare()
        loop._run_improvement_cycle(trigger="milestone")
        assert loop.state.cycles_run == 0
        assert worker.calls == []
