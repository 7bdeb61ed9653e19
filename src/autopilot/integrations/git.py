"""Checkpoint commits through the git CLI."""
from __future__ import annotations

import logging
import subprocess

from autopilot.core.interfaces import CommitResult, Committer, NullCommitter

logger = logging.getLogger("autopilot.git")

_NOTHING_TO_COMMIT = ("nothing to commit", "nothing added to commit", "no changes added to commit")


def _run_git(repo_dir: str, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    """Run a git command in the given repo directory."""
    cmd = ["git", "-C", repo_dir] + list(args)
    return subprocess.run(
        cmd,
        capture_output=True,
        text=True,
        check=check,
        timeout=60,
    )


def is_git_repo(repo_dir: str) -> bool:
    try:
        result = _run_git(repo_dir, "rev-parse", "--is-inside-work-tree", check=False)
        return result.returncode == 0 and result.stdout.strip() == "true"
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return False


class GitCommitter:
    """Stages everything under ``repo_dir`` and commits it."""

    def __init__(self, repo_dir: str) -> None:
        self.repo_dir = repo_dir

    def commit(self, message: str) -> CommitResult:
        try:
            _run_git(self.repo_dir, "add", "-A")
            result = _run_git(self.repo_dir, "commit", "-m", message, check=False)
        except subprocess.CalledProcessError as exc:
            error = (exc.stderr or exc.stdout or str(exc)).strip()
            logger.warning("git add failed in %s: %s", self.repo_dir, error)
            return CommitResult(success=False, error=error)
        except (subprocess.TimeoutExpired, FileNotFoundError) as exc:
            logger.warning("git unavailable in %s: %s", self.repo_dir, exc)
            return CommitResult(success=False, error=str(exc))

        output = f"{result.stdout}\n{result.stderr}".strip()
        if result.returncode != 0:
            if any(marker in output for marker in _NOTHING_TO_COMMIT):
                logger.debug("Nothing to commit for: %s", message)
                return CommitResult(success=True)
            logger.warning("git commit failed (exit %d): %s", result.returncode, output)
            return CommitResult(success=False, error=output)

        commit_hash = ""
        try:
            commit_hash = _run_git(self.repo_dir, "rev-parse", "HEAD").stdout.strip()
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as exc:
            logger.debug("Could not read HEAD after commit: %s", exc)
        logger.info("Committed %s: %s", commit_hash[:12] or "(unknown)", message)
        return CommitResult(success=True, commit_hash=commit_hash)


def make_committer(repo_dir: str, enabled: bool = True) -> Committer:
    """GitCommitter for a git work tree, otherwise a NullCommitter."""
    if enabled and is_git_repo(repo_dir):
        return GitCommitter(repo_dir)
    if enabled:
        logger.warning("%s is not a git work tree; checkpoint commits disabled", repo_dir)
    return NullCommitter()
