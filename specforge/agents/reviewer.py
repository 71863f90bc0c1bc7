"""Reviewer Agent: independent models critique the current draft each round.

Reviewers see only the requirements snapshot and the current spec. Their
Markdown feedback is combined into one bundle per round, in configured model
order, whatever order the calls complete in.
"""

import asyncio
import time
from functools import partial
from datetime import datetime, timezone
from typing import Awaitable, Callable, Literal, TypedDict

from specforge.gateway import ModelGateway
from specforge.utils.concurrency import DEFAULT_LIMIT, Outcome, Task, run_bounded
from specforge.utils.formatter import format_duration
from specforge.utils.retry import with_retry

REVIEW_PROMPT = """\
You are a senior software architect and specification reviewer.

You will receive:
- A requirements snapshot (source of truth)
- The current specification draft

Review the spec for:
1. Completeness (missing requirements, edge cases, undefined behaviours)
2. Clarity (ambiguity, room for misinterpretation)
3. Technical feasibility (soundness, better approaches)
4. Consistency (internal alignment and alignment with requirements snapshot)
5. Security and privacy risks
6. Scalability
7. UX issues

Return feedback in Markdown with sections:
- Critical Issues
- Recommendations
- Questions
- Positive Notes (brief)

Be specific and reference section names where possible.
"""


class ReviewerFeedback(TypedDict):
    model_id: str
    status: Literal["success", "error"]
    content: str
    duration_ms: int
    error: str | None


def build_review_messages(system_prompt: str, snapshot: str, current_spec: str) -> list[dict]:
    user_prompt = (
        f"Requirements Snapshot (Source of Truth):\n\n{snapshot}\n\n---\n\n"
        f"Current Specification:\n\n{current_spec}"
    )
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]


async def run_review_round(
    gateway: ModelGateway,
    models: list[str],
    messages: list[dict],
    *,
    limit: int = DEFAULT_LIMIT,
    retry: dict | None = None,
    on_start: Callable[[str], Awaitable[None] | None] | None = None,
    on_complete: Callable[[ReviewerFeedback], Awaitable[None] | None] | None = None,
) -> list[ReviewerFeedback]:
    """Fan `messages` out to `models`, at most `limit` at a time.

    Each call is wrapped in the retry policy. A failing reviewer never
    cancels the others. Returns one ReviewerFeedback per model, in the order
    of `models`.
    """
    retry = retry or {"max_retries": 3, "max_duration": 300.0}
    started: dict[str, float] = {}

    def _task(model: str) -> Task[str]:
        return Task(
            key=model,
            run=partial(
                with_retry,
                partial(gateway.complete, model, messages),
                label=f"review by {model}",
                **retry,
            ),
        )

    def _to_feedback(outcome: Outcome[str]) -> ReviewerFeedback:
        elapsed = time.monotonic() - started.get(outcome.key, time.monotonic())
        return {
            "model_id": outcome.key,
            "status": "success" if outcome.ok else "error",
            "content": outcome.value or "",
            "duration_ms": int(elapsed * 1000),
            "error": None if outcome.ok else str(outcome.error),
        }

    feedback_by_model: dict[str, ReviewerFeedback] = {}

    async def _started(model: str) -> None:
        started[model] = time.monotonic()
        if on_start is not None:
            result = on_start(model)
            if asyncio.iscoroutine(result):
                await result

    async def _completed(outcome: Outcome[str]) -> None:
        feedback = _to_feedback(outcome)
        feedback_by_model[outcome.key] = feedback
        if on_complete is not None:
            result = on_complete(feedback)
            if asyncio.iscoroutine(result):
                await result

    outcomes = await run_bounded(
        [_task(model) for model in models],
        limit=limit,
        on_start=_started,
        on_complete=_completed,
    )
    return [feedback_by_model.get(o.key) or _to_feedback(o) for o in outcomes]


def aggregate_feedback(
    round_number: int,
    spec_version: int,
    feedbacks: list[ReviewerFeedback],
    now: datetime | None = None,
) -> str:
    """Combine reviewer feedback into the round's bundle.

    Sections follow the order of `feedbacks`, each labeled with the model id
    and how long the call took.
    """
    timestamp = (now or datetime.now(timezone.utc)).isoformat()
    lines = [
        f"# Feedback Round {round_number}",
        "",
        f"**Timestamp**: {timestamp}",
        f"**Spec Version Reviewed**: v{spec_version}",
        f"**Reviewers**: {len(feedbacks)}",
        "",
        "---",
        "",
    ]
    for feedback in feedbacks:
        lines.append(f"## Feedback from {feedback['model_id']}")
        lines.append("")
        lines.append(f"**Status**: {feedback['status']}")
        lines.append(f"**Duration**: {format_duration(feedback['duration_ms'])}")
        lines.append("")
        if feedback["status"] == "success":
            lines.append(feedback["content"].strip())
        else:
            lines.append(f"*Error: {feedback['error']}*")
        lines.append("")
        lines.append("---")
        lines.append("")
    return "\n".join(lines)
