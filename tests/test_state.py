"""Tests for tern.state: session bookkeeping, project detection and persistence."""

import json
import logging
import tempfile
from datetime import datetime
from pathlib import Path

import pytest

from tern.errors import SessionLoadError
from tern.state import (
    MAX_FOCUSED_FILES,
    MAX_RECENT_FILES,
    CompletedTask,
    SessionState,
    SessionStore,
    default_session_path,
    detect_project_type,
    find_project_root,
)


def _touch(path):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("", encoding="utf-8")


# ---------------------------------------------------------------------------
# Project detection
# ---------------------------------------------------------------------------


class TestProjectRoot:
    def test_finds_marker_in_ancestor(self, tmp_path):
        _touch(tmp_path / "go.mod")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_project_root(str(nested)) == str(tmp_path)

    def test_git_dir_is_a_marker(self, tmp_path):
        (tmp_path / ".git").mkdir()
        nested = tmp_path / "src"
        nested.mkdir()
        assert find_project_root(str(nested)) == str(tmp_path)

    def test_nearest_marker_wins(self, tmp_path):
        _touch(tmp_path / "package.json")
        _touch(tmp_path / "sub" / "Cargo.toml")
        assert find_project_root(str(tmp_path / "sub")) == str(tmp_path / "sub")


class TestProjectType:
    @pytest.mark.parametrize(
        "marker,expected",
        [
            ("go.mod", "go"),
            ("package.json", "nodejs"),
            ("requirements.txt", "python"),
            ("pyproject.toml", "python"),
            ("setup.py", "python"),
            ("Cargo.toml", "rust"),
        ],
    )
    def test_markers(self, tmp_path, marker, expected):
        _touch(tmp_path / marker)
        assert detect_project_type(str(tmp_path)) == expected

    def test_priority(self, tmp_path):
        _touch(tmp_path / "package.json")
        _touch(tmp_path / "go.mod")
        assert detect_project_type(str(tmp_path)) == "go"

    def test_unknown(self, tmp_path):
        assert detect_project_type(str(tmp_path)) == "unknown"

    def test_method_skips_empty_root(self):
        state = SessionState()
        state.detect_project_type()
        assert state.project_type == ""

    def test_method_sets_type(self, tmp_path):
        _touch(tmp_path / "Cargo.toml")
        state = SessionState.new(str(tmp_path))
        state.detect_project_type()
        assert state.project_type == "rust"


# ---------------------------------------------------------------------------
# Files, tasks, bookmarks
# ---------------------------------------------------------------------------


class TestFiles:
    def test_focused_most_recent_first(self):
        state = SessionState()
        state.add_focused_file("/a")
        state.add_focused_file("/b")
        assert state.get_focused_files() == ["/b", "/a"]

    def test_focused_dedup_moves_to_front(self):
        state = SessionState()
        for p in ("/a", "/b", "/c"):
            state.add_focused_file(p)
        state.add_focused_file("/a")
        assert state.get_focused_files() == ["/a", "/c", "/b"]

    def test_focused_capped(self):
        state = SessionState()
        for i in range(15):
            state.add_focused_file(f"/f{i}")
        assert MAX_FOCUSED_FILES == 10
        assert state.get_focused_files() == [f"/f{i}" for i in range(14, 4, -1)]

    def test_duplicate_at_cap_does_not_grow(self):
        state = SessionState()
        for i in range(15):
            state.add_focused_file(f"/f{i}")
        state.add_focused_file("/f7")
        files = state.get_focused_files()
        assert len(files) == MAX_FOCUSED_FILES
        assert files[:2] == ["/f7", "/f14"]

    def test_recent_capped(self):
        state = SessionState()
        for i in range(MAX_RECENT_FILES + 5):
            state.add_recent_file(f"/r{i}")
        assert len(state.recent_files) == MAX_RECENT_FILES
        assert state.recent_files[0] == f"/r{MAX_RECENT_FILES + 4}"

    def test_remove_and_clear(self):
        state = SessionState()
        state.add_focused_file("/a")
        state.add_focused_file("/b")
        state.remove_focused_file("/a")
        assert state.get_focused_files() == ["/b"]
        state.clear_focused_files()
        assert state.get_focused_files() == []

    def test_get_focused_returns_copy(self):
        state = SessionState()
        state.add_focused_file("/a")
        state.get_focused_files().append("/x")
        assert state.get_focused_files() == ["/a"]

    def test_mutation_updates_timestamp(self):
        state = SessionState()
        state.updated_at = datetime(2000, 1, 1).astimezone()
        state.add_recent_file("/a")
        assert state.updated_at.year > 2000


class TestTasks:
    def test_complete_moves_to_history(self):
        state = SessionState()
        state.set_current_task("add login")
        state.complete_current_task(["/src/login.py"])
        assert state.get_current_task() == ""
        assert len(state.task_history) == 1
        assert state.task_history[0].description == "add login"
        assert state.task_history[0].files_changed == ["/src/login.py"]

    def test_complete_without_task_is_noop(self):
        state = SessionState()
        state.complete_current_task()
        assert state.task_history == []


class TestBookmarks:
    def test_set_get_remove(self):
        state = SessionState()
        state.set_bookmark("src", "/proj/src")
        assert state.get_bookmark("src") == "/proj/src"
        assert state.list_bookmarks() == {"src": "/proj/src"}
        assert state.remove_bookmark("src")
        assert state.get_bookmark("src") is None
        assert not state.remove_bookmark("src")


# ---------------------------------------------------------------------------
# Context summary
# ---------------------------------------------------------------------------


class TestContextSummary:
    def test_minimal(self):
        state = SessionState(working_dir="/w")
        assert state.get_context_summary() == (
            "Session Context Summary\n"
            "======================\n"
            "Working Directory: /w\n"
        )

    def test_full(self):
        state = SessionState(
            working_dir="/w", project_root="/w", project_type="go"
        )
        state.set_current_task("ship it")
        for i in range(7):
            state.add_focused_file(f"/w/f{i}")
        for i in range(4):
            state.add_recent_file(f"/w/r{i}")
        state.task_history.append(
            CompletedTask("old task", datetime(2024, 5, 1, 14, 30).astimezone())
        )

        out = state.get_context_summary()
        assert "Project Root: /w\n" in out
        assert "Project Type: go\n" in out
        assert "Current Task: ship it\n" in out
        assert "Focused Files (7):\n  - /w/f6\n" in out
        assert "  ... and 2 more\n" in out
        assert "Recent Files (4):\n  - /w/r3\n  - /w/r2\n  - /w/r1\n  ... and 1 more\n" in out
        assert "Completed Tasks: 1\n  Last: old task (completed 14:30)\n" in out


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestSerialization:
    def test_round_trip_preserves_fields(self, tmp_path):
        state = SessionState.new(str(tmp_path))
        state.add_focused_file("/a")
        state.set_bookmark("x", "/x")
        state.set_current_task("t")
        state.complete_current_task(["/a"])
        path = tmp_path / "session.json"
        state.save_to_file(path)

        loaded = SessionState.load_from_file(path)
        assert loaded.to_dict() == state.to_dict()
        assert loaded.task_history[0].completed_at == state.task_history[0].completed_at

    def test_file_is_indented_json(self, tmp_path):
        path = tmp_path / "session.json"
        SessionState(working_dir="/w").save_to_file(path)
        text = path.read_text()
        assert text.startswith("{\n  ")
        assert json.loads(text)["working_dir"] == "/w"

    def test_no_temp_files_left(self, tmp_path):
        path = tmp_path / "session.json"
        SessionState().save_to_file(path)
        assert [p.name for p in tmp_path.iterdir()] == ["session.json"]

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(SessionLoadError):
            SessionState.load_from_file(tmp_path / "nope.json")

    def test_load_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(SessionLoadError, match="invalid JSON"):
            SessionState.load_from_file(path)

    def test_load_non_object(self, tmp_path):
        path = tmp_path / "list.json"
        path.write_text("[1, 2]")
        with pytest.raises(SessionLoadError):
            SessionState.load_from_file(path)

    def test_load_bad_timestamp(self, tmp_path):
        path = tmp_path / "ts.json"
        path.write_text(json.dumps({"created_at": "yesterday"}))
        with pytest.raises(SessionLoadError, match="malformed"):
            SessionState.load_from_file(path)


class TestDefaultPath:
    def test_home(self, monkeypatch, tmp_path):
        monkeypatch.setattr(Path, "home", classmethod(lambda cls: tmp_path))
        assert default_session_path() == tmp_path / ".tern_session.json"

    def test_falls_back_to_tempdir(self, monkeypatch):
        def no_home(cls):
            raise RuntimeError("no home")

        monkeypatch.setattr(Path, "home", classmethod(no_home))
        assert default_session_path() == Path(tempfile.gettempdir()) / "tern_session.json"


class TestSessionStore:
    def test_load_or_new_missing(self, tmp_path):
        store = SessionStore(tmp_path / "s.json")
        state = store.load_or_new(str(tmp_path))
        assert state.working_dir == str(tmp_path.resolve())
        assert state.session_id.startswith("session_")

    def test_load_or_new_corrupt_logs_and_starts_fresh(self, tmp_path, caplog):
        path = tmp_path / "s.json"
        path.write_text("garbage")
        store = SessionStore(path)
        with caplog.at_level(logging.WARNING, logger="tern.state"):
            state = store.load_or_new(str(tmp_path))
        assert state.focused_files == []
        assert "starting a fresh session" in caplog.text

    def test_load_or_new_invalid_utf8_starts_fresh(self, tmp_path, caplog):
        path = tmp_path / "s.json"
        path.write_bytes(b'{"working_dir": "\xff\xfe"}')
        store = SessionStore(path)
        with caplog.at_level(logging.WARNING, logger="tern.state"):
            state = store.load_or_new(str(tmp_path))
        assert state.working_dir == str(tmp_path.resolve())
        assert "starting a fresh session" in caplog.text

    def test_load_invalid_utf8_raises_load_error(self, tmp_path):
        path = tmp_path / "s.json"
        path.write_bytes(b"\xff\xfe")
        with pytest.raises(SessionLoadError, match="cannot read"):
            SessionStore(path).load()

    def test_save_then_load(self, tmp_path):
        store = SessionStore(tmp_path / "s.json")
        state = SessionState(working_dir="/w")
        state.set_bookmark("b", "/b")
        store.save(state)
        assert store.load().get_bookmark("b") == "/b"

    def test_background_save_and_flush(self, tmp_path):
        store = SessionStore(tmp_path / "s.json")
        state = SessionState(working_dir="/w")
        for i in range(5):
            state.add_focused_file(f"/f{i}")
            store.save_in_background(state)
        store.flush()
        assert store.load().get_focused_files()[0] == "/f4"

    def test_background_save_snapshots_state(self, tmp_path):
        store = SessionStore(tmp_path / "s.json")
        state = SessionState(working_dir="/w")
        state.set_current_task("before")
        store.save_in_background(state)
        state.set_current_task("after")
        store.flush()
        assert store.load().get_current_task() == "before"

    def test_background_failure_is_logged(self, tmp_path, caplog):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        store = SessionStore(blocker / "s.json")
        with caplog.at_level(logging.WARNING, logger="tern.state"):
            store.save_in_background(SessionState())
            store.flush()
        assert "failed to save session" in caplog.text

    def test_background_unserializable_value_is_logged(self, tmp_path, caplog):
        path = tmp_path / "s.json"
        store = SessionStore(path)
        state = SessionState(working_dir="/w")
        state.bookmarks["broken"] = object()
        with caplog.at_level(logging.WARNING, logger="tern.state"):
            store.save_in_background(state)
            store.flush()
        assert "failed to save session" in caplog.text
        assert not path.exists()
        assert list(tmp_path.iterdir()) == []

    def test_stale_write_skipped(self, tmp_path):
        store = SessionStore(tmp_path / "s.json")
        store._write(SessionState(current_task="new").to_dict(), 2)
        store._write(SessionState(current_task="old").to_dict(), 1)
        assert store.load().get_current_task() == "new"
