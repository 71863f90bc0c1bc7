"""Writer Agent: asks clarifying questions, then snapshots, drafts and revises the spec.

The clarification reply is a structured payload:
{
  "ready": boolean,
  "message": "non-empty string shown to the user",
  "notes": "optional string"
}
Every other writer call returns free-form Markdown.
"""

from typing import TypedDict

from specforge.errors import InvalidWriterReply
from specforge.transcript import Transcript, format_for_prompt
from specforge.utils.parsing import parse_json_object

CLARIFY_PROMPT = """\
You are an expert product interviewer and requirements analyst.

Ask concise clarifying questions to fully understand the app idea.
Focus on:
- Target users and primary use cases
- Core features vs nice-to-haves
- Technical constraints or preferences
- Integrations
- Data and privacy needs
- UX expectations
- Scale and performance expectations

Ask only what you need to proceed.

IMPORTANT: You must respond in JSON format with this exact structure:
{
  "ready": false,
  "message": "Your question or response to the user"
}

When you have gathered enough information to write the spec, respond with:
{
  "ready": true,
  "message": "Summary of what you understood",
  "notes": "Any final notes or observations (optional)"
}

Always respond with valid JSON. The "message" field contains what the user will see.
"""

CLARIFY_REFINEMENT_PROMPT = """\
You are an expert product analyst and specification reviewer.

The user has provided an existing specification that they want to refine or improve.

Ask concise clarifying questions to understand:
- What aspects of the current spec need improvement?
- Are there new features to add or existing ones to remove?
- Have requirements changed since the original spec?
- Are there technical constraints or preferences that have changed?
- What problems or gaps have been identified in the current spec?

Ask only what you need to proceed with the refinement.

IMPORTANT: You must respond in JSON format with this exact structure:
{
  "ready": false,
  "message": "Your question or response to the user"
}

When you have gathered enough information to refine the spec, respond with:
{
  "ready": true,
  "message": "Summary of the refinements you will make",
  "notes": "Any final notes or observations (optional)"
}

Always respond with valid JSON. The "message" field contains what the user will see.
"""

SNAPSHOT_PROMPT = """\
You are an expert requirements analyst.

Given the original app idea and the full clarification transcript, produce a concise \
requirements snapshot in Markdown. Keep it structured and short.
Include:
- Target users and primary use cases
- Core features (must have)
- Nice-to-haves
- Constraints and integrations
- UX expectations
- Open questions (if any)
"""

DRAFT_PROMPT = """\
You are an expert software specification writer.

Write a detailed, implementable specification in Markdown.
Use the requirements snapshot as the source of truth, and use the original idea and \
transcript as supporting context.

Include:
- Overview and objectives
- User stories or use cases
- Functional requirements
- Technical architecture recommendations
- Data models
- API specifications (if applicable)
- UI/UX guidelines
- Error handling approach
- Security considerations
- Testing requirements
"""

REVISE_PROMPT = """\
You are an expert spec editor.

Update the current specification to address reviewer feedback while keeping it coherent \
and implementable. Use the requirements snapshot as the source of truth.
If feedback conflicts with requirements, prefer requirements and explain briefly in \
Revision Notes.

Respond with the complete revised specification, not a diff. At the end, add:
## Revision Notes
Summarise what changed and why.
"""


class ClarificationReply(TypedDict):
    ready: bool
    message: str
    notes: str | None


def _validate_reply(data: dict) -> None:
    """Validate the clarification payload against the required schema."""
    if not isinstance(data.get("ready"), bool):
        raise InvalidWriterReply('Missing or invalid "ready" field (must be boolean)')
    message = data.get("message")
    if not isinstance(message, str) or not message.strip():
        raise InvalidWriterReply('Missing or invalid "message" field (must be non-empty string)')


def parse_clarification_reply(text: str) -> ClarificationReply:
    """Parse the writer's fully assembled clarification reply.

    Tolerates surrounding markdown code fences. Raises InvalidWriterReply on
    malformed JSON, a missing boolean `ready` or a blank `message`.
    """
    data = parse_json_object(text, source="writer")
    _validate_reply(data)
    notes = data.get("notes")
    return {
        "ready": data["ready"],
        "message": data["message"].strip(),
        "notes": notes.strip() or None if isinstance(notes, str) else None,
    }


def _existing_spec_section(existing_spec: str | None) -> list[str]:
    if not existing_spec:
        return []
    return [f"Existing Specification to Refine:\n\n{existing_spec}"]


def build_snapshot_messages(
    system_prompt: str,
    idea: str,
    transcript: Transcript,
    existing_spec: str | None = None,
) -> list[dict]:
    parts = [f"Original App Idea:\n\n{idea}"]
    parts += _existing_spec_section(existing_spec)
    parts.append(f"Clarification Transcript:\n\n{format_for_prompt(transcript)}")
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": "\n\n---\n\n".join(parts)},
    ]


def build_draft_messages(
    system_prompt: str,
    snapshot: str,
    idea: str,
    transcript: Transcript | None,
    existing_spec: str | None = None,
) -> list[dict]:
    """Draft context: snapshot, idea and (only here) the clarification transcript."""
    parts = [f"Requirements Snapshot:\n\n{snapshot}", f"Original App Idea:\n\n{idea}"]
    parts += _existing_spec_section(existing_spec)
    if transcript and transcript["display_messages"]:
        parts.append(f"Clarification Transcript:\n\n{format_for_prompt(transcript)}")
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": "\n\n---\n\n".join(parts)},
    ]


def build_revision_messages(
    system_prompt: str,
    snapshot: str,
    current_spec: str,
    round_feedback: str,
) -> list[dict]:
    """Revision context: snapshot, current spec and the current round's feedback only."""
    user_prompt = (
        f"Requirements Snapshot:\n\n{snapshot}\n\n---\n\n"
        f"Current Specification:\n\n{current_spec}\n\n---\n\n"
        f"Reviewer Feedback:\n\n{round_feedback}"
    )
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]
