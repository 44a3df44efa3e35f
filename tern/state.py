"""Durable session bookkeeping: focused files, tasks, bookmarks, project info.

The state is persisted as JSON at a fixed per-user location and reloaded on
startup. Loading is best-effort: the agent falls back to a fresh state when
the file is missing or unreadable.
"""

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .errors import SessionLoadError

logger = logging.getLogger(__name__)

MAX_FOCUSED_FILES = 10
MAX_RECENT_FILES = 20
SUMMARY_FOCUSED_FILES = 5
SUMMARY_RECENT_FILES = 3

SESSION_FILENAME = ".tern_session.json"

PROJECT_ROOT_MARKERS = (
    ".git",
    "go.mod",
    "package.json",
    "Cargo.toml",
    "pyproject.toml",
    "requirements.txt",
)

# First match wins.
PROJECT_TYPE_MARKERS = (
    ("go", ("go.mod",)),
    ("nodejs", ("package.json",)),
    ("python", ("requirements.txt", "pyproject.toml", "setup.py")),
    ("rust", ("Cargo.toml",)),
)


def _now() -> datetime:
    return datetime.now().astimezone()


def find_project_root(start_dir: str) -> str:
    """Walk upward from start_dir to the first directory holding a project marker."""
    start = Path(start_dir)
    for directory in (start, *start.parents):
        if any((directory / marker).exists() for marker in PROJECT_ROOT_MARKERS):
            return str(directory)
    return str(start)


def detect_project_type(project_root: str) -> str:
    root = Path(project_root)
    for label, markers in PROJECT_TYPE_MARKERS:
        if any((root / marker).exists() for marker in markers):
            return label
    return "unknown"


def _push_front(items: list[str], path: str, cap: int) -> list[str]:
    """Move or insert path at the front, dropping the oldest beyond cap."""
    return ([path] + [p for p in items if p != path])[:cap]


@dataclass
class CompletedTask:
    description: str
    completed_at: datetime
    files_changed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "description": self.description,
            "completed_at": self.completed_at.isoformat(),
            "files_changed": list(self.files_changed),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CompletedTask":
        return cls(
            description=data["description"],
            completed_at=datetime.fromisoformat(data["completed_at"]),
            files_changed=list(data.get("files_changed") or []),
        )


@dataclass
class SessionState:
    working_dir: str = ""
    project_root: str = ""
    project_type: str = ""
    focused_files: list[str] = field(default_factory=list)
    recent_files: list[str] = field(default_factory=list)
    current_task: str = ""
    task_history: list[CompletedTask] = field(default_factory=list)
    bookmarks: dict[str, str] = field(default_factory=dict)
    session_id: str = ""
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @classmethod
    def new(cls, working_dir: str | None = None) -> "SessionState":
        """Create a fresh session rooted at working_dir (default: cwd)."""
        wd = str(Path(working_dir or os.getcwd()).resolve())
        return cls(
            working_dir=wd,
            project_root=find_project_root(wd),
            session_id=f"session_{int(time.time())}",
        )

    def _touch(self) -> None:
        self.updated_at = _now()

    # -- Files ---------------------------------------------------------------

    def add_focused_file(self, path: str) -> None:
        self.focused_files = _push_front(self.focused_files, path, MAX_FOCUSED_FILES)
        self._touch()

    def remove_focused_file(self, path: str) -> None:
        if path in self.focused_files:
            self.focused_files.remove(path)
        self._touch()

    def clear_focused_files(self) -> None:
        self.focused_files = []
        self._touch()

    def get_focused_files(self) -> list[str]:
        return list(self.focused_files)

    def add_recent_file(self, path: str) -> None:
        self.recent_files = _push_front(self.recent_files, path, MAX_RECENT_FILES)
        self._touch()

    # -- Tasks ---------------------------------------------------------------

    def set_current_task(self, task: str) -> None:
        self.current_task = task
        self._touch()

    def get_current_task(self) -> str:
        return self.current_task

    def complete_current_task(self, files_changed: list[str] | None = None) -> None:
        """Move the current task into history. No-op when there is no task."""
        if not self.current_task:
            return
        self.task_history.append(
            CompletedTask(
                description=self.current_task,
                completed_at=_now(),
                files_changed=list(files_changed or []),
            )
        )
        self.current_task = ""
        self._touch()

    # -- Bookmarks -----------------------------------------------------------

    def set_bookmark(self, name: str, path: str) -> None:
        self.bookmarks[name] = path
        self._touch()

    def get_bookmark(self, name: str) -> str | None:
        return self.bookmarks.get(name)

    def remove_bookmark(self, name: str) -> bool:
        if name not in self.bookmarks:
            return False
        del self.bookmarks[name]
        self._touch()
        return True

    def list_bookmarks(self) -> dict[str, str]:
        return dict(self.bookmarks)

    # -- Project -------------------------------------------------------------

    def detect_project_type(self) -> None:
        if not self.project_root:
            return
        self.project_type = detect_project_type(self.project_root)

    # -- Rendering -----------------------------------------------------------

    def get_context_summary(self) -> str:
        lines = [
            "Session Context Summary",
            "======================",
            f"Working Directory: {self.working_dir}",
        ]
        if self.project_root:
            lines.append(f"Project Root: {self.project_root}")
        if self.project_type:
            lines.append(f"Project Type: {self.project_type}")
        if self.current_task:
            lines.append(f"Current Task: {self.current_task}")

        for title, files, limit in (
            ("Focused Files", self.focused_files, SUMMARY_FOCUSED_FILES),
            ("Recent Files", self.recent_files, SUMMARY_RECENT_FILES),
        ):
            if not files:
                continue
            lines.append(f"{title} ({len(files)}):")
            lines.extend(f"  - {f}" for f in files[:limit])
            if len(files) > limit:
                lines.append(f"  ... and {len(files) - limit} more")

        if self.task_history:
            last = self.task_history[-1]
            lines.append(f"Completed Tasks: {len(self.task_history)}")
            lines.append(
                f"  Last: {last.description} "
                f"(completed {last.completed_at.strftime('%H:%M')})"
            )
        return "\n".join(lines) + "\n"

    # -- Serialization -------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "working_dir": self.working_dir,
            "project_root": self.project_root,
            "project_type": self.project_type,
            "focused_files": list(self.focused_files),
            "recent_files": list(self.recent_files),
            "current_task": self.current_task,
            "task_history": [t.to_dict() for t in self.task_history],
            "bookmarks": dict(self.bookmarks),
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionState":
        if not isinstance(data, dict):
            raise SessionLoadError("session record must be a JSON object")
        try:
            state = cls(
                working_dir=data.get("working_dir", ""),
                project_root=data.get("project_root", ""),
                project_type=data.get("project_type", ""),
                focused_files=list(data.get("focused_files") or []),
                recent_files=list(data.get("recent_files") or []),
                current_task=data.get("current_task", ""),
                task_history=[
                    CompletedTask.from_dict(t) for t in data.get("task_history") or []
                ],
                bookmarks=dict(data.get("bookmarks") or {}),
                session_id=data.get("session_id", ""),
            )
            if data.get("created_at"):
                state.created_at = datetime.fromisoformat(data["created_at"])
            if data.get("updated_at"):
                state.updated_at = datetime.fromisoformat(data["updated_at"])
        except (KeyError, TypeError, ValueError) as e:
            raise SessionLoadError(f"malformed session record: {e}") from e
        return state

    def save_to_file(self, path: str | Path) -> None:
        """Write the state as JSON, atomically. Raises OSError on failure."""
        _write_json_atomic(Path(path), self.to_dict())

    @classmethod
    def load_from_file(cls, path: str | Path) -> "SessionState":
        """Read a state written by save_to_file. Raises SessionLoadError."""
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise SessionLoadError(f"cannot read session file {path}: {e}") from e
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise SessionLoadError(f"invalid JSON in session file {path}: {e}") from e
        return cls.from_dict(data)


def _write_json_atomic(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=path.name + ".", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def default_session_path() -> Path:
    """Per-user session file: ~/.tern_session.json, or the temp dir without a home."""
    try:
        return Path.home() / SESSION_FILENAME
    except RuntimeError:
        return Path(tempfile.gettempdir()) / SESSION_FILENAME.lstrip(".")


class SessionStore:
    """Reads and writes a SessionState at a fixed location.

    ``save_in_background`` never blocks the caller and never raises; failures
    are logged. ``flush`` waits for outstanding background writes.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path is not None else default_session_path()
        self._write_lock = threading.Lock()
        self._pending: list[threading.Thread] = []
        self._seq = 0
        self._written_seq = 0

    def load(self) -> SessionState:
        return SessionState.load_from_file(self.path)

    def load_or_new(self, working_dir: str | None = None) -> SessionState:
        """Load the saved session, or start a fresh one if that fails."""
        if not self.path.exists():
            return SessionState.new(working_dir)
        try:
            return self.load()
        except SessionLoadError as e:
            logger.warning("starting a fresh session: %s", e)
            return SessionState.new(working_dir)

    def save(self, state: SessionState) -> None:
        """Synchronous save. Raises OSError on failure."""
        self._seq += 1
        self._write(state.to_dict(), self._seq)

    def save_in_background(self, state: SessionState) -> None:
        # Snapshot on the calling thread.
        record = state.to_dict()
        self._seq += 1
        self._pending = [t for t in self._pending if t.is_alive()]
        thread = threading.Thread(
            target=self._write_logged, args=(record, self._seq), daemon=True
        )
        self._pending.append(thread)
        thread.start()

    def flush(self, timeout: float | None = None) -> None:
        for thread in self._pending:
            thread.join(timeout)
        self._pending = [t for t in self._pending if t.is_alive()]

    def _write(self, record: dict, seq: int) -> None:
        with self._write_lock:
            # Never overwrite a newer snapshot with an older one.
            if seq < self._written_seq:
                return
            _write_json_atomic(self.path, record)
            self._written_seq = seq

    def _write_logged(self, record: dict, seq: int) -> None:
        try:
            self._write(record, seq)
        except Exception as e:
            logger.warning(
                "failed to save session to %s: %s", self.path, e, exc_info=True
            )
