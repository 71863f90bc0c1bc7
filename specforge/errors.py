"""Error taxonomy for the SpecForge workflow.

Every failure that reaches a caller is a SpecForgeError. The orchestrator
records `phase` and `model_id` on the persisted `last_error` entry.
"""


class SpecForgeError(Exception):
    """Base class for all workflow errors."""

    def __init__(self, message: str, *, model_id: str | None = None):
        super().__init__(message)
        self.model_id = model_id


class ConfigError(SpecForgeError):
    """Session configuration failed validation."""

    def __init__(self, errors: list[dict]):
        self.errors = errors
        details = "; ".join(f"{e['field']}: {e['message']}" for e in errors)
        super().__init__(f"Invalid session configuration: {details}")


class Unreachable(SpecForgeError):
    """A model failed the preflight reachability check."""


class InvalidWriterReply(SpecForgeError):
    """The writer's structured clarification reply could not be parsed."""


class TransientProviderFault(SpecForgeError):
    """Rate limit or network-level failure talking to a provider."""


class RetryExhausted(TransientProviderFault):
    """The retry budget ran out while the operation kept failing transiently."""

    def __init__(self, message: str, last_error: BaseException, attempts: int):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


class RoundFailure(SpecForgeError):
    """At least one reviewer ended in error after retries."""

    def __init__(self, round_number: int, failed: dict[str, str]):
        self.round_number = round_number
        self.failed = failed
        names = ", ".join(failed)
        super().__init__(
            f"Review round {round_number} failed: {names} failed",
            model_id=names,
        )


class InvalidTransition(SpecForgeError):
    """Illegal phase transition. Always a programming error."""

    def __init__(self, from_phase: str, to_phase: str):
        self.from_phase = from_phase
        self.to_phase = to_phase
        super().__init__(f"Invalid transition from {from_phase} to {to_phase}")


class StorageFault(SpecForgeError):
    """Reading or writing the session directory failed."""


class WorkflowAborted(SpecForgeError):
    """The caller aborted the run."""
