"""Output Formatter: Markdown headers and layouts for committed artifacts."""

import re
from datetime import datetime, timezone

_SPEC_HEADER_RE = re.compile(
    r"^#[^\n]+\n\n\*\*Generated\*\*:[^\n]+\n\*\*Spec Writer Model\*\*:[^\n]+\n"
    r"\*\*Spec Version\*\*:[^\n]+\n\n---\n\n"
)
_REVISION_NOTES_RE = re.compile(r"##\s*revision\s*notes?\s*\n([\s\S]*?)(?=\n##|\Z)", re.IGNORECASE)

REVISION_NOTES_PLACEHOLDER = "*Revision notes were not generated for this version.*"


def _timestamp(now: datetime | None = None) -> str:
    return (now or datetime.now(timezone.utc)).isoformat()


def shorten(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def app_name_from_idea(idea: str) -> str:
    """Derive a short title from the first line of the idea."""
    first_line = idea.strip().split("\n")[0].strip() if idea.strip() else ""
    if not first_line:
        return "Untitled Project"
    if len(first_line) <= 50:
        return first_line
    truncated = first_line[:50]
    last_space = truncated.rfind(" ")
    if last_space > 30:
        return truncated[:last_space] + "..."
    return truncated + "..."


def format_duration(ms: int | float | None) -> str:
    """Render milliseconds as '1 minute 5 seconds' / '12 seconds'."""
    seconds = int((ms or 0) // 1000)
    minutes, remaining = divmod(seconds, 60)

    def _plural(n: int, unit: str) -> str:
        return f"{n} {unit}{'' if n == 1 else 's'}"

    if minutes > 0:
        return f"{_plural(minutes, 'minute')} {_plural(remaining, 'second')}"
    return _plural(seconds, "second")


def render_snapshot(snapshot: str, model: str, idea: str, now: datetime | None = None) -> str:
    return (
        "# Requirements Snapshot\n\n"
        f"**Generated**: {_timestamp(now)}\n"
        f"**Model**: {model}\n"
        f"**App Idea**: {shorten(idea)}\n\n"
        "---\n\n"
        f"{snapshot}\n"
    )


def has_revision_notes(spec: str) -> bool:
    return bool(re.search(r"##\s*revision\s*notes?", spec, re.IGNORECASE))


def extract_revision_notes(spec: str) -> str | None:
    match = _REVISION_NOTES_RE.search(spec)
    return match.group(1).strip() if match else None


def render_spec(
    content: str,
    version: int,
    model: str,
    app_name: str,
    *,
    require_revision_notes: bool = False,
    now: datetime | None = None,
) -> str:
    """Wrap a spec body in its metadata header.

    Revisions without a Revision Notes section get a placeholder one.
    """
    text = (
        f"# {app_name}, Specification v{version}\n\n"
        f"**Generated**: {_timestamp(now)}\n"
        f"**Spec Writer Model**: {model}\n"
        f"**Spec Version**: v{version}\n\n"
        "---\n\n"
        f"{content}"
    )
    if require_revision_notes and not has_revision_notes(content):
        text += f"\n\n---\n\n## Revision Notes\n\n{REVISION_NOTES_PLACEHOLDER}\n"
    return text


def strip_spec_header(spec: str) -> str:
    """Remove the metadata header so a spec can be re-used as model context."""
    match = _SPEC_HEADER_RE.match(spec)
    return spec[match.end():] if match else spec


def render_reviewer_response(
    model_id: str,
    round_number: int,
    content: str,
    duration_ms: int,
    status: str = "success",
    now: datetime | None = None,
) -> str:
    return (
        f"# Reviewer Response: {model_id}\n\n"
        f"**Timestamp**: {_timestamp(now)}\n"
        f"**Round**: {round_number}\n"
        f"**Status**: {status}\n"
        f"**Duration**: {format_duration(duration_ms)}\n\n"
        "---\n\n"
        f"{content}\n"
    )


_REVIEWER_HEADER_RE = re.compile(r"^# Reviewer Response:[^\n]*\n\n(?:\*\*[^\n]*\n)+\n---\n\n")


def strip_reviewer_header(text: str) -> str:
    """Recover the reviewer's own text from a saved response artifact."""
    match = _REVIEWER_HEADER_RE.match(text)
    body = text[match.end():] if match else text
    return body.rstrip("\n")


def render_session_log_header(config: dict, now: datetime | None = None) -> str:
    reviewers = ", ".join(config.get("reviewer_models", []))
    return (
        "# Session Log\n\n"
        f"**Created**: {_timestamp(now)}\n"
        f"**App Idea**: {shorten(config.get('idea', ''))}\n\n"
        "---\n\n"
        "## Configuration\n\n"
        f"- **Spec Writer Model**: {config.get('writer_model', '')}\n"
        f"- **Reviewer Models**: {reviewers}\n"
        f"- **Number of Rounds**: {config.get('rounds', '')}\n"
        f"- **Output Directory**: {config.get('output_dir', '')}\n\n"
        "---\n\n"
        "## Events\n\n"
    )


def render_log_event(event: str, details: str | None = None, now: datetime | None = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    entry = f"### {stamp} - {event}\n"
    if details:
        entry += f"{details}\n"
    return entry + "\n"
