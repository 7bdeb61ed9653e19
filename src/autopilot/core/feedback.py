"""Append-only per-task outcome log with periodic archival.

The live log is a JSONL file whose first line is a header record. Rotation
moves the whole file to ``feedback/batch-NNNN.jsonl`` (read-only, never
rewritten) and starts a fresh log containing only a new header.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import os
import stat
from typing import Any, List, Optional

from autopilot.core.fileio import append_jsonl, read_jsonl

logger = logging.getLogger("autopilot.feedback")

SUCCESS = "success"
FAILURE = "failure"

_ARCHIVE_PREFIX = "batch-"
_ARCHIVE_SUFFIX = ".jsonl"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FeedbackEntry:
    """Outcome of one dispatch."""
    task_id: str
    title: str
    outcome: str                    # success | failure
    duration_seconds: float
    observations: str = ""
    error: str = ""
    attempt: int = 1
    ts: datetime = field(default_factory=_now)

    @property
    def succeeded(self) -> bool:
        return self.outcome == SUCCESS

    def to_dict(self) -> dict:
        return {
            "kind": "entry",
            "task_id": self.task_id,
            "title": self.title,
            "outcome": self.outcome,
            "duration_seconds": round(self.duration_seconds, 3),
            "observations": self.observations,
            "error": self.error,
            "attempt": self.attempt,
            "ts": self.ts.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> FeedbackEntry:
        return cls(
            task_id=str(d["task_id"]),
            title=d.get("title", ""),
            outcome=d["outcome"],
            duration_seconds=float(d.get("duration_seconds", 0.0)),
            observations=d.get("observations", ""),
            error=d.get("error") or "",
            attempt=int(d.get("attempt", 1)),
            ts=datetime.fromisoformat(d["ts"]) if d.get("ts") else _now(),
        )


class FeedbackLog:
    def __init__(self, path: str, session_id: str, archive_dir: Optional[str] = None) -> None:
        self.path = path
        self.session_id = session_id
        self.archive_dir = archive_dir or os.path.join(os.path.dirname(path) or ".", "feedback")

    def ensure(self) -> None:
        """Start a header-only log if none exists yet."""
        if not os.path.exists(self.path):
            self._write_header()

    def _write_header(self) -> None:
        append_jsonl(
            self.path,
            {
                "kind": "header",
                "session_id": self.session_id,
                "batch": len(self.archives()) + 1,
                "created_at": _now().isoformat(),
            },
        )

    def header(self) -> Optional[dict[str, Any]]:
        if not os.path.exists(self.path):
            return None
        for record in read_jsonl(self.path):
            if record.get("kind") == "header":
                return record
        return None

    def append(self, entry: FeedbackEntry) -> None:
        self.ensure()
        append_jsonl(self.path, entry.to_dict())

    def entries(self) -> List[FeedbackEntry]:
        if not os.path.exists(self.path):
            return []
        return read_entries(self.path)

    def archives(self) -> List[str]:
        if not os.path.isdir(self.archive_dir):
            return []
        names = sorted(
            name
            for name in os.listdir(self.archive_dir)
            if name.startswith(_ARCHIVE_PREFIX) and name.endswith(_ARCHIVE_SUFFIX)
        )
        return [os.path.join(self.archive_dir, name) for name in names]

    def all_entries(self) -> List[FeedbackEntry]:
        """Archived entries (oldest first) followed by the live log."""
        result: List[FeedbackEntry] = []
        for archive in self.archives():
            result.extend(read_entries(archive))
        result.extend(self.entries())
        return result

    def rotate(self) -> str:
        """Archive the live log and start a fresh one. Returns the archive path."""
        self.ensure()
        os.makedirs(self.archive_dir, exist_ok=True)
        batch = len(self.archives()) + 1
        archive_path = os.path.join(self.archive_dir, f"{_ARCHIVE_PREFIX}{batch:04d}{_ARCHIVE_SUFFIX}")
        if os.path.exists(archive_path):
            raise FileExistsError(f"Feedback archive already exists: {archive_path}")
        os.replace(self.path, archive_path)
        os.chmod(archive_path, stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH)
        self._write_header()
        logger.info("Feedback log rotated: session=%s batch=%d", self.session_id, batch)
        return archive_path


def read_entries(path: str) -> List[FeedbackEntry]:
    return [FeedbackEntry.from_dict(record) for record in read_jsonl(path) if record.get("kind") == "entry"]
