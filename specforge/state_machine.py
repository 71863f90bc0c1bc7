"""Phase state machine: the only gate on WorkflowState.phase.

Holds the current phase and round counter in memory and notifies observers
on every transition. Persisting the result is the orchestrator's job.
"""

from typing import Callable

from specforge.errors import InvalidTransition
from specforge.state import Phase

Observer = Callable[[str, str], None]

WORKFLOW_PHASES = ("preflight", "clarifying", "snapshotting", "drafting", "reviewing", "revising")
NON_TERMINAL = ("idle",) + WORKFLOW_PHASES


def _build_edges() -> frozenset[tuple[str, str]]:
    edges = {
        ("idle", "preflight"),
        ("preflight", "clarifying"),
        ("clarifying", "snapshotting"),
        ("snapshotting", "drafting"),
        ("drafting", "reviewing"),
        ("reviewing", "revising"),
        ("revising", "reviewing"),  # next round
        ("revising", "completed"),  # final round
        ("error", "idle"),  # reset
    }
    # Resume of a run that was persisted mid-phase
    edges.update(("idle", phase) for phase in WORKFLOW_PHASES[1:])
    # Any live state may fail
    edges.update((phase, "error") for phase in NON_TERMINAL)
    # Retry from a specific step
    edges.update(("error", phase) for phase in WORKFLOW_PHASES)
    return frozenset(edges)


LEGAL_EDGES = _build_edges()

_DESCRIPTIONS = {
    "idle": "Ready to start",
    "preflight": "Checking model availability",
    "clarifying": "Gathering requirements",
    "snapshotting": "Creating requirements snapshot",
    "drafting": "Writing initial specification",
    "completed": "Specification complete",
    "error": "Error occurred",
}


class PhaseStateMachine:
    def __init__(self, initial: Phase = "idle", current_round: int = 0, total_rounds: int = 0):
        self._phase = initial
        self._current_round = current_round
        self._total_rounds = total_rounds
        self._observers: list[Observer] = []

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def current_round(self) -> int:
        return self._current_round

    @property
    def total_rounds(self) -> int:
        return self._total_rounds

    def set_current_round(self, round_number: int) -> None:
        self._current_round = round_number

    def increment_round(self) -> int:
        self._current_round += 1
        return self._current_round

    def is_final_round(self) -> bool:
        return self._current_round >= self._total_rounds

    def can_transition(self, to: str) -> bool:
        return (self._phase, to) in LEGAL_EDGES

    def transition(self, to: str) -> None:
        """Move to `to` and notify observers with (from, to).

        Raises InvalidTransition, leaving the state untouched, if the edge
        is not legal.
        """
        if not self.can_transition(to):
            raise InvalidTransition(self._phase, to)
        from_phase = self._phase
        self._phase = to
        self._notify(from_phase, to)

    def reset(self) -> None:
        from_phase = self._phase
        self._phase = "idle"
        self._current_round = 0
        self._notify(from_phase, "idle")

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer. Returns a callable that removes it."""
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def describe(self) -> str:
        if self._phase == "reviewing":
            return f"Getting reviewer feedback (Round {self._current_round}/{self._total_rounds})"
        if self._phase == "revising":
            return f"Revising specification (Round {self._current_round}/{self._total_rounds})"
        return _DESCRIPTIONS.get(self._phase, self._phase)

    def _notify(self, from_phase: str, to_phase: str) -> None:
        for observer in list(self._observers):
            observer(from_phase, to_phase)
