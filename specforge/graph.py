"""LangGraph StateGraph definition for the review/revise round loop.

review(r) -> revise(r) -> [advance -> review(r+1) | end]

The nodes are supplied by the orchestrator; this module owns only the loop
shape and the routing decisions. A resumed run whose round already has its
feedback bundle enters at `revise`.
"""

from typing import Awaitable, Callable, Literal, TypedDict

from langgraph.graph import END, StateGraph


class RoundLoopState(TypedDict):
    round: int  # Round being worked on, 1-indexed.
    total_rounds: int
    entry: Literal["review", "revise"]
    status: Literal["in_progress", "completed"]


Node = Callable[[RoundLoopState], Awaitable[dict]]


def _route_entry(state: RoundLoopState) -> str:
    """Conditional entry: resume mid-round at revise, otherwise start with review."""
    return state["entry"]


def _route_after_revision(state: RoundLoopState) -> str:
    """Conditional edge after the writer's revision.

    The last configured round ends the loop; any earlier round moves on.
    """
    if state["status"] == "completed" or state["round"] >= state["total_rounds"]:
        return "end"
    return "next"


def _advance_round(state: RoundLoopState) -> dict:
    """Passthrough node that bumps the round counter before re-entering review."""
    return {"round": state["round"] + 1, "entry": "review"}


def build_round_graph(review_node: Node, revise_node: Node):
    """Compile the round loop around the given review/revise nodes."""
    workflow = StateGraph(RoundLoopState)

    workflow.add_node("review", review_node)
    workflow.add_node("revise", revise_node)
    workflow.add_node("advance", _advance_round)

    workflow.set_conditional_entry_point(
        _route_entry,
        {"review": "review", "revise": "revise"},
    )
    workflow.add_edge("review", "revise")
    workflow.add_conditional_edges(
        "revise",
        _route_after_revision,
        {"end": END, "next": "advance"},
    )
    workflow.add_edge("advance", "review")

    return workflow.compile()


def recursion_limit(total_rounds: int) -> int:
    """Upper bound on graph steps: three nodes per round plus slack."""
    return 3 * total_rounds + 5
