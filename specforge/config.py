"""Centralized config loading: read once at import time.

Also defines the per-run SessionConfig, which is validated before a session
directory is created and saved alongside the session state.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import TypedDict

import yaml
from dotenv import load_dotenv

from specforge.errors import ConfigError

# Load .env from project root (parent of specforge/)
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"

_config = yaml.safe_load(CONFIG_PATH.read_text())

MIN_REVIEWERS = 1
MAX_REVIEWERS = 5
MIN_ROUNDS = 1
MAX_ROUNDS = 10


def get_config() -> dict:
    """Return the loaded config dictionary."""
    return _config


class Prompts(TypedDict):
    clarify: str
    clarify_refinement: str
    snapshot: str
    draft: str
    revise: str
    review: str


class SessionConfig(TypedDict):
    idea: str
    writer_model: str
    reviewer_models: list[str]
    rounds: int
    prompts: Prompts
    output_dir: str
    created_at: str
    existing_spec: str | None  # Set when refining an existing specification.


def default_prompts() -> Prompts:
    """Return the built-in prompt templates."""
    from specforge.agents import reviewer, writer

    return {
        "clarify": writer.CLARIFY_PROMPT,
        "clarify_refinement": writer.CLARIFY_REFINEMENT_PROMPT,
        "snapshot": writer.SNAPSHOT_PROMPT,
        "draft": writer.DRAFT_PROMPT,
        "revise": writer.REVISE_PROMPT,
        "review": reviewer.REVIEW_PROMPT,
    }


def merge_prompts(overrides: dict | None) -> Prompts:
    """Merge user prompt overrides with the defaults. Blank overrides are ignored."""
    merged = default_prompts()
    for key, value in (overrides or {}).items():
        if key not in merged:
            raise ConfigError([{"field": f"prompts.{key}", "message": "Unknown prompt"}])
        if isinstance(value, str) and value.strip():
            merged[key] = value.strip()
    return merged


def validate_session_config(config: dict) -> list[dict]:
    """Return a list of {field, message} problems. Empty list = valid."""
    errors = []

    idea = config.get("idea")
    existing_spec = config.get("existing_spec")
    if not (isinstance(idea, str) and idea.strip()) and not existing_spec:
        errors.append({"field": "idea", "message": "Idea is required"})

    writer_model = config.get("writer_model")
    if not (isinstance(writer_model, str) and writer_model.strip()):
        errors.append({"field": "writer_model", "message": "Writer model is required"})

    reviewers = config.get("reviewer_models") or []
    if len(reviewers) < MIN_REVIEWERS:
        errors.append({
            "field": "reviewer_models",
            "message": f"At least {MIN_REVIEWERS} reviewer model is required",
        })
    elif len(reviewers) > MAX_REVIEWERS:
        errors.append({
            "field": "reviewer_models",
            "message": f"Maximum {MAX_REVIEWERS} reviewer models allowed",
        })
    elif len(set(reviewers)) != len(reviewers):
        errors.append({"field": "reviewer_models", "message": "Reviewer models must be unique"})

    rounds = config.get("rounds")
    if not isinstance(rounds, int) or isinstance(rounds, bool) or not MIN_ROUNDS <= rounds <= MAX_ROUNDS:
        errors.append({
            "field": "rounds",
            "message": f"Number of rounds must be between {MIN_ROUNDS} and {MAX_ROUNDS}",
        })

    output_dir = config.get("output_dir")
    if not (isinstance(output_dir, str) and output_dir.strip()):
        errors.append({"field": "output_dir", "message": "Output directory is required"})

    return errors


def create_session_config(
    idea: str,
    *,
    writer_model: str | None = None,
    reviewer_models: list[str] | None = None,
    rounds: int | None = None,
    prompts: dict | None = None,
    output_dir: str | None = None,
    existing_spec: str | None = None,
) -> SessionConfig:
    """Build a SessionConfig from explicit values, falling back to config.yaml.

    Raises ConfigError if the result does not validate.
    """
    defaults = get_config()
    session: SessionConfig = {
        "idea": (idea or "").strip(),
        "writer_model": writer_model or defaults.get("writer_model", ""),
        "reviewer_models": list(reviewer_models or defaults.get("reviewer_models", [])),
        "rounds": rounds if rounds is not None else defaults.get("rounds", 3),
        "prompts": merge_prompts(prompts),
        "output_dir": str(output_dir or defaults.get("output_dir", "./output")),
        "created_at": datetime.now(timezone.utc).isoformat(),
        "existing_spec": existing_spec,
    }
    errors = validate_session_config(session)
    if errors:
        raise ConfigError(errors)
    return session


def retry_settings(name: str) -> dict:
    """Return {max_retries, max_duration} for a named retry profile.

    Unknown or missing profiles fall back to the global `retry` block.
    """
    config = get_config()
    base = config.get("retry", {})
    profile = {**base, **config.get(name, {})}
    return {
        "max_retries": profile.get("max_retries", 5),
        "max_duration": float(profile.get("max_duration_s", 300)),
    }
