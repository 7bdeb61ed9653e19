from __future__ import annotations

import json
import os
from typing import List, Optional

import typer
from dotenv import load_dotenv

app = typer.Typer(add_completion=False)


def _load_env() -> None:
    load_dotenv()


def _settings():
    from autopilot.core.config import Settings

    try:
        return Settings.from_env()
    except ValueError as exc:
        typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2) from exc


def _setup_logging(settings) -> None:
    """Configure centralized logging to both stdout and log files."""
    from autopilot.core.logging_config import setup_logging

    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)


def _make_collaborators(settings, spec_id: str):
    from autopilot.integrations.git import make_committer
    from autopilot.integrations.worker_cli import CommandWorker

    if not settings.worker_command:
        typer.secho("AUTOPILOT_WORKER_COMMAND is not set; nothing can execute tasks.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)
    worker = CommandWorker(
        settings.worker_command,
        cwd=settings.repo_dir,
        timeout=settings.task_timeout_seconds,
        spec_id=spec_id,
    )
    return worker, make_committer(settings.repo_dir, enabled=settings.commit_enabled)


def _report(result) -> None:
    colour = {"completed": typer.colors.GREEN, "terminated": typer.colors.YELLOW}.get(result.status, typer.colors.RED)
    typer.secho(f"Session {result.session_id}: {result.status}", fg=colour, bold=True)
    typer.echo(f"   completed={result.completed} dispatched={result.dispatched} cycles={result.cycles_run}")
    if result.message:
        typer.echo(f"   {result.message}")
    if result.status == "terminated":
        typer.echo(f"   Resume with: autopilot resume {result.session_id}")
    if result.status != "completed":
        raise typer.Exit(code=1)


@app.command()
def run(
    spec_id: str = typer.Argument(..., help="Task list to execute (tasks/<spec_id>.json)"),
    session_id: Optional[str] = typer.Option(None, "--session-id", help="Explicit id for the new session"),
) -> None:
    """Start a new session over a task list and run it to an end state."""
    _load_env()
    settings = _settings()
    _setup_logging(settings)

    from autopilot.core.graph import CycleError
    from autopilot.core.session import SessionNotFoundError, start_session

    worker, committer = _make_collaborators(settings, spec_id)
    try:
        result = start_session(settings, spec_id, worker, committer, session_id=session_id)
    except (SessionNotFoundError, FileExistsError, CycleError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    _report(result)


@app.command()
def resume(
    session_id: str = typer.Argument(..., help="Session to resume"),
    force: bool = typer.Option(False, "--force", help="Resume even if the heartbeat looks fresh"),
) -> None:
    """Recover an interrupted or terminated session and continue it."""
    _load_env()
    settings = _settings()
    _setup_logging(settings)

    from autopilot.core.recovery import SessionActiveError, SessionNotResumableError
    from autopilot.core.session import SessionNotFoundError, SessionPaths, resume_session
    from autopilot.core.state import StateStore

    paths = SessionPaths.for_session(settings.data_dir, session_id)
    store = StateStore(paths.state_file)
    if not store.exists():
        typer.secho(f"Session not found: {session_id}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    worker, committer = _make_collaborators(settings, store.load().spec_id)
    try:
        result = resume_session(settings, session_id, worker, committer, force=force)
    except (SessionNotFoundError, SessionActiveError, SessionNotResumableError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    _report(result)


def _print_status(info: dict, as_json: bool) -> None:
    if as_json:
        typer.echo(json.dumps(info, indent=2))
        return
    state = info["state"]
    typer.echo(f"Session:   {state['session_id']}")
    typer.echo(f"Spec:      {state['spec_id']}")
    typer.echo(f"Status:    {state['status']} ({state['phase']})")
    typer.echo(f"Progress:  {state['completed_count']}/{state['total_tasks']} done, {state['skipped_count']} skipped")
    typer.echo(f"Dispatches: {state['total_dispatches']}  cycles: {state['cycles_run']}/{state['max_improvement_cycles']}")
    heartbeat = f"{info['heartbeat_age_seconds']}s ago" + (" (stale)" if info["stale"] else "")
    typer.echo(f"Heartbeat: {heartbeat}")
    if state.get("current_task_id"):
        typer.echo(f"Running:   task {state['current_task_id']}")
    if state.get("termination_reason"):
        typer.echo(f"Stopped:   {state['termination_reason']}")
    if state.get("last_error"):
        typer.echo(f"Last error: {state['last_error']}")


@app.command()
def status(
    session_id: str = typer.Argument(..., help="Session to inspect"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw status document"),
    watch: bool = typer.Option(False, "--watch", help="Print again on every state change until the session stops"),
    interval: float = typer.Option(1.0, "--interval", min=0.1, help="Seconds between checks with --watch"),
) -> None:
    """Show a session's progress without touching it."""
    _load_env()
    settings = _settings()

    from autopilot.core.session import SessionNotFoundError, session_status, watch_session

    try:
        if not watch:
            _print_status(session_status(settings, session_id), as_json)
            return
        for count, info in enumerate(watch_session(settings, session_id, interval=interval)):
            if count and not as_json:
                typer.echo("")
            _print_status(info, as_json)
    except SessionNotFoundError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    except KeyboardInterrupt:
        raise typer.Exit(code=130)


@app.command()
def tasks(
    spec_id: str = typer.Argument(..., help="Task list to show"),
    status_filter: Optional[str] = typer.Option(
        None, "--status", help="pending | in_progress | done | skipped"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print tasks as JSON"),
) -> None:
    """List the tasks of a task list."""
    _load_env()
    settings = _settings()

    from autopilot.core.graph import TASK_STATUSES, load_task_file

    if status_filter and status_filter not in TASK_STATUSES | {"skipped"}:
        typer.secho(f"Unknown status: {status_filter}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)
    path = settings.task_file(spec_id)
    if not os.path.exists(path):
        typer.secho(f"Task list not found: {path}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    graph = load_task_file(path, max_blockers=settings.max_blockers)
    selected = graph.list_tasks(status_filter)

    if as_json:
        typer.echo(json.dumps([task.to_dict() for task in selected], indent=2))
        return
    if not selected:
        typer.echo("No tasks.")
        return
    for task in selected:
        label = "skipped" if task.skipped else task.status
        deps = f"  (after {', '.join(task.depends_on)})" if task.depends_on else ""
        typer.echo(f"{task.task_id:>4}  P{task.priority}  {label:<11}  {task.title}{deps}")
    counts = graph.count_by_status()
    typer.echo(
        f"\n{counts['done']} done, {counts['pending']} pending, "
        f"{counts['in_progress']} in progress, {counts['skipped']} skipped"
    )


@app.command("add-task")
def add_task(
    spec_id: str = typer.Argument(..., help="Task list to add to (created if missing)"),
    title: str = typer.Option(..., "--title", help="Short task title"),
    description: str = typer.Option("", "--description", help="Instructions handed to the worker"),
    priority: int = typer.Option(2, "--priority", min=0, help="0 is most urgent"),
    depends_on: Optional[List[str]] = typer.Option(None, "--depends-on", help="Task id this task waits on (repeatable)"),
) -> None:
    """Append a task to a task list, refusing dependency cycles."""
    _load_env()
    settings = _settings()

    from autopilot.core.graph import CycleError, Task, TaskGraph, load_task_file, save_task_file

    path = settings.task_file(spec_id)
    if os.path.exists(path):
        graph = load_task_file(path, max_blockers=settings.max_blockers)
    else:
        graph = TaskGraph(spec_id=spec_id, max_blockers=settings.max_blockers)
    task = Task(
        task_id=graph.next_task_id(),
        title=title,
        description=description,
        priority=priority,
        depends_on=list(depends_on or []),
    )
    try:
        graph.add_task(task)
    except CycleError as exc:
        typer.secho(f"Refused: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    for task_id, missing in graph.missing_dependencies().items():
        if task_id == task.task_id:
            typer.secho(f"Warning: unknown dependencies {', '.join(missing)}", fg=typer.colors.YELLOW, err=True)
    save_task_file(graph, path)
    typer.echo(f"Added task {task.task_id} to {spec_id}: {title}")


@app.command()
def version() -> None:
    from autopilot import __version__

    typer.echo(__version__)


if __name__ == "__main__":
    app()
