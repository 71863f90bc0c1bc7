"""Session storage: the durable home of every committed artifact.

Layout of a session directory:

    config.json                      SessionConfig
    state.json                       WorkflowState
    clarification-transcript.json    Transcript
    requirements-snapshot.md
    spec-v1.md, spec-v2.md, ...
    spec-final.md
    feedback/round-N.md              aggregated feedback bundle
    feedback/round-N-<model>.md      individual reviewer responses
    session-log.md                   append-only human-readable log

Every file except the log is written to `<name>.partial` and renamed into
place, so a reader never observes a half-written artifact.
"""

import json
import logging
import os
import re
from datetime import datetime
from pathlib import Path

from specforge.errors import StorageFault
from specforge.state import WorkflowState, create_initial_state
from specforge.transcript import Transcript
from specforge.utils import formatter

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"
STATE_FILE = "state.json"
TRANSCRIPT_FILE = "clarification-transcript.json"
SNAPSHOT_FILE = "requirements-snapshot.md"
SESSION_LOG_FILE = "session-log.md"
FEEDBACK_DIR = "feedback"
SPEC_FINAL_FILE = "spec-final.md"
PARTIAL_SUFFIX = ".partial"


def atomic_write(path: Path, content: str) -> None:
    """Write `content` to `path` via a .partial file and an atomic rename."""
    path = Path(path)
    partial = path.with_name(path.name + PARTIAL_SUFFIX)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(partial, "w", encoding="utf-8") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(partial, path)
    except OSError as exc:
        partial.unlink(missing_ok=True)
        raise StorageFault(f"Failed to write {path}: {exc}") from exc


def safe_read(path: Path) -> str | None:
    """Return the file's text, or None if it does not exist."""
    try:
        return Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise StorageFault(f"Failed to read {path}: {exc}") from exc


def clean_partial_files(directory: Path) -> list[Path]:
    """Delete leftover .partial files under `directory` (recursively)."""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    cleaned = []
    try:
        for partial in sorted(directory.rglob(f"*{PARTIAL_SUFFIX}")):
            if partial.is_file():
                partial.unlink()
                cleaned.append(partial)
    except OSError as exc:
        raise StorageFault(f"Failed to clean partial files in {directory}: {exc}") from exc
    if cleaned:
        logger.info("Removed %d partial file(s) from %s", len(cleaned), directory)
    return cleaned


def _slug(text: str, limit: int = 40) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:limit].rstrip("-") or "session"


def create_session_directory(base_dir: Path, idea: str, now: datetime | None = None) -> Path:
    """Create a fresh, non-conflicting session directory under `base_dir`."""
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    stem = f"{stamp}-{_slug(idea)}"
    base_dir = Path(base_dir)

    session_dir = base_dir / stem
    counter = 1
    while session_dir.exists():
        counter += 1
        session_dir = base_dir / f"{stem}-{counter}"

    try:
        (session_dir / FEEDBACK_DIR).mkdir(parents=True)
    except OSError as exc:
        raise StorageFault(f"Failed to create session directory {session_dir}: {exc}") from exc
    return session_dir


def _safe_model_id(model_id: str) -> str:
    return re.sub(r"[^a-zA-Z0-9-]", "_", model_id)


class SessionStore:
    """Reads and writes the files of one session directory."""

    def __init__(self, session_dir: Path):
        self.session_dir = Path(session_dir)

    # --- paths ---

    @property
    def config_path(self) -> Path:
        return self.session_dir / CONFIG_FILE

    @property
    def state_path(self) -> Path:
        return self.session_dir / STATE_FILE

    @property
    def transcript_path(self) -> Path:
        return self.session_dir / TRANSCRIPT_FILE

    @property
    def snapshot_path(self) -> Path:
        return self.session_dir / SNAPSHOT_FILE

    @property
    def log_path(self) -> Path:
        return self.session_dir / SESSION_LOG_FILE

    @property
    def final_path(self) -> Path:
        return self.session_dir / SPEC_FINAL_FILE

    @property
    def feedback_dir(self) -> Path:
        return self.session_dir / FEEDBACK_DIR

    def spec_path(self, version: int) -> Path:
        return self.session_dir / f"spec-v{version}.md"

    def feedback_bundle_path(self, round_number: int) -> Path:
        return self.feedback_dir / f"round-{round_number}.md"

    def reviewer_response_path(self, round_number: int, model_id: str) -> Path:
        return self.feedback_dir / f"round-{round_number}-{_safe_model_id(model_id)}.md"

    # --- lifecycle ---

    def initialize(self, config: dict) -> WorkflowState:
        """Write config, a fresh idle state and the log header."""
        self.clean_partials()
        self.save_config(config)
        state = create_initial_state()
        self.save_state(state)
        atomic_write(self.log_path, formatter.render_session_log_header(config))
        return state

    def clean_partials(self) -> list[Path]:
        return clean_partial_files(self.session_dir)

    def exists(self) -> bool:
        return self.state_path.is_file()

    # --- json documents ---

    def _load_json(self, path: Path):
        content = safe_read(path)
        if content is None:
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            raise StorageFault(f"Corrupt JSON in {path}: {exc}") from exc

    def save_config(self, config: dict) -> None:
        atomic_write(self.config_path, json.dumps(config, indent=2))

    def load_config(self) -> dict | None:
        return self._load_json(self.config_path)

    def save_state(self, state: WorkflowState) -> None:
        atomic_write(self.state_path, json.dumps(state, indent=2))

    def load_state(self) -> WorkflowState | None:
        data = self._load_json(self.state_path)
        if data is None:
            return None
        if not isinstance(data, dict) or "phase" not in data:
            raise StorageFault(f"{self.state_path} is not a workflow state")
        state = create_initial_state()
        state.update(data)
        state["rounds"] = {str(k): v for k, v in (state.get("rounds") or {}).items()}
        return state

    def save_transcript(self, transcript: Transcript) -> Path:
        atomic_write(self.transcript_path, json.dumps(transcript, indent=2))
        return self.transcript_path

    def load_transcript(self) -> Transcript | None:
        return self._load_json(self.transcript_path)

    # --- markdown artifacts ---

    def ref(self, path: Path) -> str:
        """Artifact reference stored in state: the path relative to the session directory."""
        return Path(path).relative_to(self.session_dir).as_posix()

    def load_text(self, ref: str | Path | None) -> str | None:
        if not ref:
            return None
        return safe_read(self.session_dir / ref)

    def save_snapshot(self, content: str) -> Path:
        atomic_write(self.snapshot_path, content)
        return self.snapshot_path

    def load_snapshot(self) -> str | None:
        return safe_read(self.snapshot_path)

    def save_spec(self, version: int, content: str) -> Path:
        path = self.spec_path(version)
        atomic_write(path, content)
        return path

    def load_spec(self, version: int) -> str | None:
        return safe_read(self.spec_path(version))

    def save_reviewer_response(self, round_number: int, model_id: str, content: str) -> Path:
        path = self.reviewer_response_path(round_number, model_id)
        atomic_write(path, content)
        return path

    def save_feedback_bundle(self, round_number: int, content: str) -> Path:
        path = self.feedback_bundle_path(round_number)
        atomic_write(path, content)
        return path

    def copy_final(self, version: int) -> Path:
        content = self.load_spec(version)
        if content is None:
            raise StorageFault(f"Cannot finalize: {self.spec_path(version)} is missing")
        atomic_write(self.final_path, content)
        return self.final_path

    # --- session log ---

    def append_log(self, event: str, details: str | None = None) -> None:
        try:
            with open(self.log_path, "a", encoding="utf-8") as fh:
                fh.write(formatter.render_log_event(event, details))
        except OSError as exc:
            raise StorageFault(f"Failed to append to {self.log_path}: {exc}") from exc


def list_sessions(base_dir: Path) -> list[dict]:
    """Return sessions under `base_dir`, newest first.

    A session can be resumed unless it is idle or completed.
    """
    base_dir = Path(base_dir)
    if not base_dir.is_dir():
        return []

    sessions = []
    for entry in base_dir.iterdir():
        if not entry.is_dir():
            continue
        store = SessionStore(entry)
        try:
            state = store.load_state()
            config = store.load_config()
        except StorageFault as exc:
            logger.warning("Skipping unreadable session %s: %s", entry, exc)
            continue
        if not state or not config:
            continue
        sessions.append({
            "path": str(entry),
            "name": entry.name,
            "created_at": config.get("created_at", ""),
            "phase": state["phase"],
            "can_resume": state["phase"] not in ("idle", "completed"),
        })

    return sorted(sessions, key=lambda s: s["created_at"], reverse=True)
