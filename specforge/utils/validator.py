"""Input validation: checks caller-supplied text before it reaches the workflow."""


def validate_input(idea: str) -> str:
    """Validate that the idea is a non-empty string.

    Returns the stripped input on success.
    Raises ValueError if input is empty or whitespace-only.
    """
    if not isinstance(idea, str) or not idea.strip():
        raise ValueError("Idea must be a non-empty string.")
    return idea.strip()


def validate_answer(answer: str | None) -> str | None:
    """Normalize a clarification answer.

    Returns None for a missing or blank answer, which means "proceed without
    answering"; otherwise the stripped text.
    """
    if answer is None:
        return None
    if not isinstance(answer, str):
        raise ValueError("Answer must be a string.")
    return answer.strip() or None
