"""Start, resume and inspect sessions on disk.

Layout under ``<data_dir>``::

    tasks/<spec_id>.json
    sessions/<session_id>/state.json
    sessions/<session_id>/feedback.jsonl
    sessions/<session_id>/feedback/batch-NNNN.jsonl
    sessions/<session_id>/cycles/cycle-NN/
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import os
import time
import uuid
from typing import Any, Callable, Iterator, Optional

from autopilot.core.config import Settings
from autopilot.core.feedback import FeedbackLog
from autopilot.core.graph import TaskGraph, load_task_file
from autopilot.core.improvement import ImprovementCycleController
from autopilot.core.interfaces import Committer, NullCommitter, Worker
from autopilot.core.logging_config import log_session_event
from autopilot.core.loop import ExecutionLoop, LoopConfig, LoopResult
from autopilot.core.recovery import is_stale, recover_session
from autopilot.core.state import IN_PROGRESS, SessionState, StateStore

logger = logging.getLogger("autopilot.session")


class SessionNotFoundError(FileNotFoundError):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id(spec_id: str, now: Optional[datetime] = None) -> str:
    stamp = (now or _now()).strftime("%Y%m%d-%H%M%S")
    return f"{spec_id}-{stamp}-{uuid.uuid4().hex[:6]}"


@dataclass(frozen=True)
class SessionPaths:
    root: str
    state_file: str
    feedback_file: str
    archive_dir: str
    cycles_dir: str

    @classmethod
    def for_session(cls, data_dir: str, session_id: str) -> SessionPaths:
        root = os.path.join(data_dir, "sessions", session_id)
        return cls(
            root=root,
            state_file=os.path.join(root, "state.json"),
            feedback_file=os.path.join(root, "feedback.jsonl"),
            archive_dir=os.path.join(root, "feedback"),
            cycles_dir=os.path.join(root, "cycles"),
        )


def _load_graph(settings: Settings, spec_id: str) -> tuple[TaskGraph, str]:
    path = settings.task_file(spec_id)
    if not os.path.exists(path):
        raise SessionNotFoundError(f"Task list not found: {path}")
    graph = load_task_file(path, max_blockers=settings.max_blockers)
    for task_id, missing in graph.missing_dependencies().items():
        logger.warning("Task %s depends on unknown task(s): %s", task_id, ", ".join(missing))
    return graph, path


def _build_loop(
    settings: Settings,
    paths: SessionPaths,
    graph: TaskGraph,
    task_file: str,
    state: SessionState,
    worker: Worker,
    committer: Optional[Committer],
    clock: Callable[[], datetime],
) -> ExecutionLoop:
    committer = committer or NullCommitter()
    return ExecutionLoop(
        graph=graph,
        state=state,
        store=StateStore(paths.state_file),
        feedback=FeedbackLog(paths.feedback_file, session_id=state.session_id, archive_dir=paths.archive_dir),
        worker=worker,
        committer=committer,
        config=LoopConfig.from_settings(settings),
        task_file=task_file,
        improvement=ImprovementCycleController(
            settings=settings,
            worker=worker,
            committer=committer,
            cycles_dir=paths.cycles_dir,
            depth=state.depth,
            clock=clock,
        ),
        clock=clock,
    )


def start_session(
    settings: Settings,
    spec_id: str,
    worker: Worker,
    committer: Optional[Committer] = None,
    session_id: Optional[str] = None,
    clock: Callable[[], datetime] = _now,
) -> LoopResult:
    """Create a fresh session for *spec_id* and run it to an end state."""
    graph, task_file = _load_graph(settings, spec_id)
    for task in graph.list_tasks("in_progress"):
        # Left over from an earlier session that never finished.
        graph.reset_in_progress(task.task_id)
    now = clock()
    session_id = session_id or new_session_id(spec_id, now)
    paths = SessionPaths.for_session(settings.data_dir, session_id)
    store = StateStore(paths.state_file)
    if store.exists():
        raise FileExistsError(f"Session already exists: {session_id}")

    state = SessionState(
        session_id=session_id,
        spec_id=spec_id,
        created_at=now,
        started_at=now,
        last_heartbeat=now,
        total_tasks=len(graph),
        completed_count=len(graph.list_tasks("done")),
        skipped_count=len(graph.list_tasks("skipped")),
        max_improvement_cycles=settings.max_improvement_cycles,
    )
    store.save(state)
    logger.info("Session %s started for %s (%d tasks)", session_id, spec_id, len(graph))
    log_session_event(session_id, "session_started", spec_id=spec_id, total_tasks=len(graph))
    return _build_loop(settings, paths, graph, task_file, state, worker, committer, clock).run()


def resume_session(
    settings: Settings,
    session_id: str,
    worker: Worker,
    committer: Optional[Committer] = None,
    force: bool = False,
    clock: Callable[[], datetime] = _now,
) -> LoopResult:
    """Recover an interrupted or terminated session and keep running it."""
    paths = SessionPaths.for_session(settings.data_dir, session_id)
    store = StateStore(paths.state_file)
    if not store.exists():
        raise SessionNotFoundError(f"Session not found: {session_id}")
    spec_id = store.load().spec_id
    graph, task_file = _load_graph(settings, spec_id)
    state = recover_session(
        store,
        graph,
        stale_after=timedelta(minutes=settings.stale_heartbeat_minutes),
        now=clock(),
        force=force,
        feedback=FeedbackLog(paths.feedback_file, session_id=session_id, archive_dir=paths.archive_dir),
    )
    state.max_improvement_cycles = settings.max_improvement_cycles
    logger.info("Session %s resumed at %d/%d tasks", session_id, state.completed_count, len(graph))
    return _build_loop(settings, paths, graph, task_file, state, worker, committer, clock).run()


def session_status(settings: Settings, session_id: str, now: Optional[datetime] = None) -> dict[str, Any]:
    """Read-only snapshot of a session's state and task counts."""
    paths = SessionPaths.for_session(settings.data_dir, session_id)
    store = StateStore(paths.state_file)
    if not store.exists():
        raise SessionNotFoundError(f"Session not found: {session_id}")
    state = store.load()
    task_file = settings.task_file(state.spec_id)
    counts: Optional[dict[str, int]] = None
    if os.path.exists(task_file):
        counts = load_task_file(task_file, max_blockers=settings.max_blockers).count_by_status()
    feedback = FeedbackLog(paths.feedback_file, session_id=session_id, archive_dir=paths.archive_dir)
    return {
        "state": state.to_dict(),
        "tasks": counts,
        "heartbeat_age_seconds": round(state.heartbeat_age_seconds(now), 1),
        "stale": is_stale(state, timedelta(minutes=settings.stale_heartbeat_minutes), now),
        "feedback_archives": len(feedback.archives()),
    }


def watch_session(
    settings: Settings,
    session_id: str,
    interval: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[dict[str, Any]]:
    """Yield :func:`session_status` each time the state file is rewritten.

    The state file is replaced atomically on every save, so a new inode or
    mtime marks a change. Stops after the first snapshot whose session is no
    longer running.
    """
    state_file = SessionPaths.for_session(settings.data_dir, session_id).state_file
    last_seen: Optional[tuple[int, int]] = None
    while True:
        try:
            stat = os.stat(state_file)
        except FileNotFoundError as exc:
            raise SessionNotFoundError(f"Session not found: {session_id}") from exc
        marker = (stat.st_ino, stat.st_mtime_ns)
        if marker != last_seen:
            last_seen = marker
            info = session_status(settings, session_id)
            yield info
            if info["state"]["status"] != IN_PROGRESS:
                return
        sleep(interval)
