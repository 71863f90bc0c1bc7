"""Tests for session storage: atomic writes, layout, listing."""

import json
import os
from datetime import datetime
from unittest.mock import patch

import pytest

from specforge.errors import StorageFault
from specforge.storage import (
    SessionStore,
    atomic_write,
    clean_partial_files,
    create_session_directory,
    list_sessions,
    safe_read,
)


class TestAtomicWrite:
    def test_writes_content(self, tmp_path):
        path = tmp_path / "a.md"
        atomic_write(path, "hello")
        assert path.read_text() == "hello"
        assert not (tmp_path / "a.md.partial").exists()

    def test_overwrites_existing(self, tmp_path):
        path = tmp_path / "a.md"
        path.write_text("old")
        atomic_write(path, "new")
        assert path.read_text() == "new"

    def test_creates_parent_directories(self, tmp_path):
        path = tmp_path / "feedback" / "round-1.md"
        atomic_write(path, "x")
        assert path.read_text() == "x"

    def test_failed_rename_leaves_original_and_no_partial(self, tmp_path):
        path = tmp_path / "a.md"
        path.write_text("committed")
        with patch("specforge.storage.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StorageFault, match="disk full"):
                atomic_write(path, "half")
        assert path.read_text() == "committed"
        assert not (tmp_path / "a.md.partial").exists()


class TestReadAndClean:
    def test_safe_read_missing(self, tmp_path):
        assert safe_read(tmp_path / "missing.md") is None

    def test_clean_partials_recursive(self, tmp_path):
        (tmp_path / "feedback").mkdir()
        top = tmp_path / "state.json.partial"
        nested = tmp_path / "feedback" / "round-1.md.partial"
        keep = tmp_path / "spec-v1.md"
        for p in (top, nested, keep):
            p.write_text("x")

        cleaned = clean_partial_files(tmp_path)

        assert set(cleaned) == {top, nested}
        assert keep.exists()
        assert not top.exists() and not nested.exists()

    def test_clean_missing_directory(self, tmp_path):
        assert clean_partial_files(tmp_path / "nope") == []


class TestSessionDirectory:
    def test_name_has_timestamp_and_slug(self, tmp_path):
        now = datetime(2026, 3, 4, 5, 6, 7)
        path = create_session_directory(tmp_path, "A Todo App!", now=now)
        assert path.name == "20260304-050607-a-todo-app"
        assert (path / "feedback").is_dir()

    def test_conflict_gets_counter(self, tmp_path):
        now = datetime(2026, 3, 4, 5, 6, 7)
        first = create_session_directory(tmp_path, "todo", now=now)
        second = create_session_directory(tmp_path, "todo", now=now)
        assert first != second
        assert second.name.endswith("-2")

    def test_blank_idea_slug(self, tmp_path):
        path = create_session_directory(tmp_path, "   ", now=datetime(2026, 1, 1))
        assert path.name.endswith("-session")


class TestSessionStore:
    def test_initialize_writes_config_state_and_log(self, tmp_path, session_config):
        store = SessionStore(tmp_path)
        state = store.initialize(session_config)

        assert state["phase"] == "idle"
        assert store.load_config() == session_config
        assert store.load_state() == state
        assert store.log_path.read_text().startswith("# Session Log")

    def test_load_state_fills_defaults(self, tmp_path):
        store = SessionStore(tmp_path)
        store.state_path.write_text(json.dumps({"phase": "drafting", "rounds": {1: {}}}))
        state = store.load_state()
        assert state["phase"] == "drafting"
        assert state["latest_artifact_version"] == 0
        assert list(state["rounds"]) == ["1"]

    def test_corrupt_state_raises(self, tmp_path):
        store = SessionStore(tmp_path)
        store.state_path.write_text("{not json")
        with pytest.raises(StorageFault, match="Corrupt JSON"):
            store.load_state()

    def test_state_without_phase_raises(self, tmp_path):
        store = SessionStore(tmp_path)
        store.state_path.write_text("[]")
        with pytest.raises(StorageFault, match="not a workflow state"):
            store.load_state()

    def test_spec_versions_and_final(self, tmp_path):
        store = SessionStore(tmp_path)
        store.save_spec(1, "v1")
        store.save_spec(2, "v2")
        final = store.copy_final(2)
        assert final.read_text() == "v2"
        assert store.load_spec(1) == "v1"

    def test_copy_final_missing_version(self, tmp_path):
        with pytest.raises(StorageFault, match="spec-v3.md"):
            SessionStore(tmp_path).copy_final(3)

    def test_reviewer_response_path_is_filesystem_safe(self, tmp_path):
        store = SessionStore(tmp_path)
        path = store.save_reviewer_response(1, "google/gemini-2.5-pro", "text")
        assert path.name == "round-1-google_gemini-2_5-pro.md"
        assert path.parent.name == "feedback"

    def test_append_log(self, tmp_path, session_config):
        store = SessionStore(tmp_path)
        store.initialize(session_config)
        store.append_log("Draft Generated", "Saved to spec-v1.md")
        text = store.log_path.read_text()
        assert "- Draft Generated\nSaved to spec-v1.md\n" in text

    def test_load_text_without_ref(self, tmp_path):
        assert SessionStore(tmp_path).load_text(None) is None

    def test_refs_are_relative_to_session_dir(self, tmp_path):
        store = SessionStore(tmp_path / "session")
        path = store.save_reviewer_response(1, "model-a", "Looks fine.")
        ref = store.ref(path)
        assert ref == "feedback/round-1-model-a.md"
        assert store.load_text(ref) == "Looks fine."

    def test_refs_resolve_independently_of_cwd(self, tmp_path, monkeypatch):
        (tmp_path / "work").mkdir()
        monkeypatch.chdir(tmp_path / "work")
        store = SessionStore("session")
        ref = store.ref(store.save_snapshot("Snapshot"))

        monkeypatch.chdir(tmp_path)
        moved = SessionStore(tmp_path / "work" / "session")
        assert moved.load_text(ref) == "Snapshot"


class TestListSessions:
    def _make(self, base, name, phase, created_at):
        store = SessionStore(base / name)
        os.makedirs(store.session_dir)
        store.save_config({"created_at": created_at})
        store.save_state({"phase": phase})

    def test_newest_first_with_resume_flag(self, tmp_path):
        self._make(tmp_path, "old", "completed", "2026-01-01T00:00:00")
        self._make(tmp_path, "new", "reviewing", "2026-02-01T00:00:00")
        self._make(tmp_path, "fresh", "idle", "2026-01-15T00:00:00")

        sessions = list_sessions(tmp_path)

        assert [s["name"] for s in sessions] == ["new", "fresh", "old"]
        assert [s["can_resume"] for s in sessions] == [True, False, False]

    def test_skips_unreadable_and_foreign_directories(self, tmp_path):
        self._make(tmp_path, "good", "error", "2026-01-01T00:00:00")
        (tmp_path / "other").mkdir()
        broken = tmp_path / "broken"
        broken.mkdir()
        (broken / "state.json").write_text("{")
        (broken / "config.json").write_text("{}")

        assert [s["name"] for s in list_sessions(tmp_path)] == ["good"]

    def test_missing_base_dir(self, tmp_path):
        assert list_sessions(tmp_path / "nope") == []
