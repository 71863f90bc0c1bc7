"""Workflow state: single source of truth for where a run is.

Persisted as state.json in the session directory. Round numbers are string
keys so the mapping survives a JSON round trip unchanged.
"""

from datetime import datetime, timezone
from typing import Literal, NotRequired, TypedDict

Phase = Literal[
    "idle",
    "preflight",
    "clarifying",
    "snapshotting",
    "drafting",
    "reviewing",
    "revising",
    "completed",
    "error",
]

ReviewerStatus = Literal["pending", "complete", "error"]


class ReviewerCall(TypedDict):
    status: ReviewerStatus
    artifact_ref: str | None
    duration_ms: int | None
    error: NotRequired[str]


class RoundState(TypedDict):
    reviewers: dict[str, ReviewerCall]  # Keyed by model id, in configured order.
    aggregate_ref: str | None  # Set only once every reviewer is complete.
    revised_artifact_ref: str | None


class ErrorInfo(TypedDict):
    message: str
    phase: str
    model_id: str | None
    timestamp: str


class WorkflowState(TypedDict):
    phase: Phase
    current_round: int  # Meaningful only in reviewing/revising.
    latest_artifact_version: int
    snapshot_ref: str | None
    transcript_ref: str | None
    final_ref: str | None
    clarification_ready: bool  # Last parsed writer reply said "ready".
    rounds: dict[str, RoundState]
    last_error: ErrorInfo | None


def create_initial_state() -> WorkflowState:
    return {
        "phase": "idle",
        "current_round": 0,
        "latest_artifact_version": 0,
        "snapshot_ref": None,
        "transcript_ref": None,
        "final_ref": None,
        "clarification_ready": False,
        "rounds": {},
        "last_error": None,
    }


def init_round_state(reviewer_models: list[str]) -> RoundState:
    return {
        "reviewers": {
            model: {"status": "pending", "artifact_ref": None, "duration_ms": None}
            for model in reviewer_models
        },
        "aggregate_ref": None,
        "revised_artifact_ref": None,
    }


def get_round(state: WorkflowState, round_number: int) -> RoundState | None:
    return state["rounds"].get(str(round_number))


def ensure_round(state: WorkflowState, round_number: int, reviewer_models: list[str]) -> RoundState:
    """Return the round's state, creating it if needed.

    Reviewers added to the configuration after the round started are added
    as pending so they are not silently skipped on resume.
    """
    key = str(round_number)
    if key not in state["rounds"]:
        state["rounds"][key] = init_round_state(reviewer_models)
    round_state = state["rounds"][key]
    for model in reviewer_models:
        round_state["reviewers"].setdefault(
            model, {"status": "pending", "artifact_ref": None, "duration_ms": None}
        )
    return round_state


def pending_reviewers(round_state: RoundState, reviewer_models: list[str]) -> list[str]:
    """Models not yet complete for this round, in configured order."""
    return [
        model for model in reviewer_models
        if round_state["reviewers"].get(model, {}).get("status") != "complete"
    ]


def is_round_complete(round_state: RoundState) -> bool:
    reviewers = round_state["reviewers"].values()
    return bool(round_state["reviewers"]) and all(r["status"] == "complete" for r in reviewers)


def has_round_error(round_state: RoundState) -> bool:
    return any(r["status"] == "error" for r in round_state["reviewers"].values())


def failed_reviewers(round_state: RoundState) -> dict[str, str]:
    return {
        model: call.get("error", "unknown error")
        for model, call in round_state["reviewers"].items()
        if call["status"] == "error"
    }


def make_error(message: str, phase: str, model_id: str | None = None) -> ErrorInfo:
    return {
        "message": message,
        "phase": phase,
        "model_id": model_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
