"""Worker that runs each task as an external command.

The command template is split shell-style and each argument is formatted
with ``{task_id}``, ``{title}`` and ``{spec_id}``; the task description is
written to the process's stdin. Exit code 0 means success.
"""
from __future__ import annotations

import logging
import os
import shlex
import subprocess
import sys
import threading
import time
from typing import Callable, Optional

from autopilot.core.graph import Task
from autopilot.core.interfaces import DispatchResult, WorkerError

logger = logging.getLogger("autopilot.worker_cli")

# Characters of output kept as observations.
OBSERVATION_TAIL = 2000


class CommandWorker:
    def __init__(
        self,
        command_template: str,
        cwd: Optional[str] = None,
        timeout: float = 1800,
        spec_id: str = "",
        on_line: Optional[Callable[[str], None]] = None,
    ) -> None:
        if not command_template or not command_template.strip():
            raise ValueError("worker command template must be non-empty")
        self.command_template = command_template
        self.cwd = cwd
        self.timeout = timeout
        self.spec_id = spec_id
        self.on_line = on_line
        self._process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()

    def build_command(self, task: Task) -> list[str]:
        fields = {"task_id": task.task_id, "title": task.title, "spec_id": self.spec_id}
        try:
            return [part.format(**fields) for part in shlex.split(self.command_template)]
        except (KeyError, IndexError, ValueError) as exc:
            raise WorkerError(f"invalid worker command template {self.command_template!r}: {exc}") from exc

    def dispatch(self, task: Task) -> DispatchResult:
        cmd = self.build_command(task)
        log_prefix = f"TASK {task.task_id}"
        logger.info("%s → %s", log_prefix, " ".join(shlex.quote(part) for part in cmd))
        try:
            process = subprocess.Popen(
                cmd,
                cwd=self.cwd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=self._make_env(task),
                encoding="utf-8",
                errors="replace",
                creationflags=subprocess.CREATE_NEW_PROCESS_GROUP if sys.platform == "win32" else 0,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise WorkerError(f"worker command not runnable: {exc}") from exc
        with self._lock:
            self._process = process

        timed_out = threading.Event()

        def _kill() -> None:
            timed_out.set()
            process.kill()

        watchdog = threading.Timer(self.timeout, _kill)
        watchdog.daemon = True
        output_lines: list[str] = []
        start_time = time.monotonic()
        watchdog.start()
        try:
            assert process.stdin is not None and process.stdout is not None
            try:
                process.stdin.write(task.description or task.title)
            except BrokenPipeError:
                logger.debug("%s: worker closed stdin early", log_prefix)
            finally:
                try:
                    process.stdin.close()
                except BrokenPipeError:
                    logger.debug("%s: stdin already closed", log_prefix)
            for line in process.stdout:
                output_lines.append(line)
                logger.debug("%s │ %s", log_prefix, line.rstrip("\n\r"))
                if self.on_line:
                    self.on_line(line.rstrip("\n\r"))
            process.wait(timeout=10)
        except subprocess.TimeoutExpired as exc:
            process.kill()
            raise WorkerError(f"worker did not exit after closing its output: {exc}") from exc
        finally:
            watchdog.cancel()
            with self._lock:
                self._process = None

        elapsed = time.monotonic() - start_time
        output = "".join(output_lines).strip()
        observations = output[-OBSERVATION_TAIL:]
        if timed_out.is_set():
            logger.warning("%s → killed after %.0fs timeout", log_prefix, self.timeout)
            return DispatchResult(success=False, observations=observations, error=f"timed out after {self.timeout}s")
        if process.returncode != 0:
            logger.warning("%s → exit code %d after %.1fs", log_prefix, process.returncode, elapsed)
            return DispatchResult(
                success=False,
                observations=observations,
                error=f"exit code {process.returncode}",
            )
        logger.info("%s → complete (%d chars, %.1fs)", log_prefix, len(output), elapsed)
        return DispatchResult(success=True, observations=observations)

    def cancel(self) -> None:
        """Kill the running command, if any."""
        with self._lock:
            process = self._process
        if process is not None and process.poll() is None:
            logger.warning("Killing worker command (pid=%s)", process.pid)
            process.kill()

    def _make_env(self, task: Task) -> dict[str, str]:
        env = dict(os.environ)
        env["AUTOPILOT_TASK_ID"] = task.task_id
        env["AUTOPILOT_TASK_TITLE"] = task.title
        env["AUTOPILOT_SPEC_ID"] = self.spec_id
        return env
