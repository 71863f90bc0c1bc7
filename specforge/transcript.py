"""Clarification transcript: a display view and a parallel model-facing view.

Both views carry the same content. `api_messages` also holds the system
prompt and the opening user message, and has no timestamps.
"""

from datetime import datetime, timezone
from typing import Literal, TypedDict


class DisplayMessage(TypedDict):
    role: Literal["user", "assistant"]
    content: str
    timestamp: str


class ApiMessage(TypedDict):
    role: Literal["system", "user", "assistant"]
    content: str


class Transcript(TypedDict):
    display_messages: list[DisplayMessage]
    api_messages: list[ApiMessage]


def create_transcript(system_prompt: str, idea: str, existing_spec: str | None = None) -> Transcript:
    """Start a transcript from the clarification prompt and the idea.

    With an existing spec the opening message asks for a refinement instead.
    """
    if existing_spec:
        goals = idea or "(No specific goals provided - please ask what improvements are needed)"
        opening = (
            f"Existing Specification to Refine:\n\n{existing_spec}\n\n---\n\n"
            f"Refinement Goals:\n\n{goals}"
        )
    else:
        opening = f"App Idea:\n\n{idea}"

    return {
        "display_messages": [],
        "api_messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": opening},
        ],
    }


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def add_user_message(transcript: Transcript, content: str) -> Transcript:
    return {
        "display_messages": transcript["display_messages"] + [
            {"role": "user", "content": content, "timestamp": _now()}
        ],
        "api_messages": transcript["api_messages"] + [{"role": "user", "content": content}],
    }


def add_assistant_message(transcript: Transcript, content: str) -> Transcript:
    return {
        "display_messages": transcript["display_messages"] + [
            {"role": "assistant", "content": content, "timestamp": _now()}
        ],
        "api_messages": transcript["api_messages"] + [{"role": "assistant", "content": content}],
    }


def format_for_prompt(transcript: Transcript) -> str:
    """Render the conversation as plain text for inclusion in a later prompt."""
    lines = []
    for msg in transcript["display_messages"]:
        role = "User" if msg["role"] == "user" else "Assistant"
        lines.append(f"{role}: {msg['content']}")
    return "\n\n".join(lines)


def format_for_display(transcript: Transcript) -> str:
    return "\n\n---\n\n".join(
        f"**{'User' if msg['role'] == 'user' else 'Spec Writer'}** ({msg['timestamp']}):\n{msg['content']}"
        for msg in transcript["display_messages"]
    )


def exchange_count(transcript: Transcript) -> int:
    """Number of completed writer replies."""
    return sum(1 for msg in transcript["display_messages"] if msg["role"] == "assistant")
