"""Shared parsing utilities for writer replies."""

import json
import re

from specforge.errors import InvalidWriterReply

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?\s*```", re.DOTALL | re.IGNORECASE)


def strip_fences(text: str) -> str:
    """Strip markdown code fences from LLM output if present."""
    match = _FENCE_RE.search(text)
    return match.group(1).strip() if match else text.strip()


def parse_json_object(text: str, *, source: str = "writer") -> dict:
    """Parse a JSON object out of a possibly fenced reply.

    Raises InvalidWriterReply on malformed JSON or a non-object payload.
    """
    content = strip_fences(text)
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise InvalidWriterReply(f"Invalid JSON response from {source}: {exc}") from exc
    if not isinstance(data, dict):
        raise InvalidWriterReply(f"Expected a JSON object from {source}, got {type(data).__name__}")
    return data
