"""Narrow interfaces to the side-effecting collaborators of the loop."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from autopilot.core.graph import Task


class WorkerError(RuntimeError):
    pass


@dataclass
class DispatchResult:
    """Outcome of one worker dispatch."""
    success: bool
    observations: str = ""
    error: Optional[str] = None


@dataclass
class CommitResult:
    success: bool
    commit_hash: str = ""
    error: str = ""


class Worker(Protocol):
    """Executes one task; at most one call is outstanding at a time.

    A worker may also define ``cancel()``. The loop calls it when a dispatch
    outlives its timeout, then waits for ``dispatch`` to return.
    """

    def dispatch(self, task: Task) -> DispatchResult:
        ...


class Committer(Protocol):
    def commit(self, message: str) -> CommitResult:
        ...


class NullCommitter:
    """Committer used when version control is disabled."""

    def commit(self, message: str) -> CommitResult:
        return CommitResult(success=True)
