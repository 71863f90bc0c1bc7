"""Tests for the round-loop graph: routing functions and compiled loop."""

import asyncio

from specforge.graph import (
    _advance_round,
    _route_after_revision,
    _route_entry,
    build_round_graph,
    recursion_limit,
)


def _loop_state(**overrides):
    state = {"round": 1, "total_rounds": 3, "entry": "review", "status": "in_progress"}
    state.update(overrides)
    return state


class TestRouting:
    def test_entry_review(self):
        assert _route_entry(_loop_state()) == "review"

    def test_entry_revise_on_resume(self):
        assert _route_entry(_loop_state(entry="revise")) == "revise"

    def test_more_rounds_continue(self):
        assert _route_after_revision(_loop_state(round=2)) == "next"

    def test_final_round_ends(self):
        assert _route_after_revision(_loop_state(round=3)) == "end"

    def test_completed_status_ends(self):
        assert _route_after_revision(_loop_state(round=1, status="completed")) == "end"

    def test_advance_bumps_round_and_resets_entry(self):
        assert _advance_round(_loop_state(round=1, entry="revise")) == {"round": 2, "entry": "review"}

    def test_recursion_limit_covers_rounds(self):
        assert recursion_limit(10) >= 3 * 10


class TestCompiledLoop:
    def _run(self, start_state):
        visits = []

        async def review(state):
            visits.append(("review", state["round"]))
            return {"status": "in_progress"}

        async def revise(state):
            visits.append(("revise", state["round"]))
            return {"status": "in_progress"}

        graph = build_round_graph(review, revise)
        final = asyncio.run(graph.ainvoke(
            start_state, config={"recursion_limit": recursion_limit(start_state["total_rounds"])},
        ))
        return visits, final

    def test_runs_every_round(self):
        visits, final = self._run(_loop_state())
        assert visits == [
            ("review", 1), ("revise", 1),
            ("review", 2), ("revise", 2),
            ("review", 3), ("revise", 3),
        ]
        assert final["round"] == 3

    def test_resume_at_revise(self):
        visits, _ = self._run(_loop_state(round=2, entry="revise"))
        assert visits == [("revise", 2), ("review", 3), ("revise", 3)]

    def test_single_round(self):
        visits, _ = self._run(_loop_state(total_rounds=1))
        assert visits == [("review", 1), ("revise", 1)]
