"""Entry point: validates input, creates or resumes a session, runs the workflow."""

import asyncio
import logging
import sys
from pathlib import Path

from specforge.config import create_session_config, get_config
from specforge.errors import SpecForgeError
from specforge.events import OrchestratorEvent
from specforge.gateway import LangChainGateway
from specforge.orchestrator import Orchestrator
from specforge.storage import list_sessions
from specforge.utils.validator import validate_input

USAGE = """\
Usage:
  specforge "app idea"             start a new session (idea may also come from stdin)
  specforge --spec FILE ["goals"]  refine an existing specification
  specforge --resume DIR           continue a session
  specforge --list                 list sessions in the output directory
Options:
  --rounds N                       number of review rounds (1-10)
"""

_PRINTED_EVENTS = {
    "preflight_complete",
    "snapshot_complete",
    "draft_complete",
    "review_round_start",
    "reviewer_complete",
    "review_round_complete",
    "revision_complete",
    "session_complete",
    "retry",
}


def _print_event(event: OrchestratorEvent) -> None:
    if event.type == "state_change" or event.type in _PRINTED_EVENTS:
        print(f"[SpecForge] {event.message}")


def _ask(reply) -> str | None:
    """Show the writer's question and read the answer. Empty input proceeds."""
    if reply is not None:
        print(f"\n{reply['message']}\n")
    try:
        answer = input("Your answer (press Enter to proceed with what you have): ")
    except EOFError:
        return None
    print()
    return answer.strip() or None


async def _drive(orchestrator: Orchestrator) -> None:
    orchestrator.events.subscribe(_print_event)
    print(f"[SpecForge] Session: {orchestrator.session_dir}")

    if orchestrator.phase == "error":
        last_error = orchestrator.state["last_error"] or {}
        print(f"[SpecForge] Previous run failed: {last_error.get('message', 'unknown error')}")
        phase = orchestrator.retry_from_error()
        print(f"[SpecForge] Retrying from {phase}")

    state = await orchestrator.run(answer=_ask)

    print(f"[SpecForge] Status: {state['phase']}")
    print(f"[SpecForge] Spec version: v{state['latest_artifact_version']}")
    if state["final_ref"]:
        print(f"[SpecForge] Output written to: {orchestrator.session_dir / state['final_ref']}")


def run(idea: str, rounds: int | None = None, spec_path: str | None = None) -> None:
    """Start a new session from an idea, or from an existing spec to refine."""
    existing_spec = None
    if spec_path:
        existing_spec = Path(spec_path).read_text(encoding="utf-8")
        idea = idea.strip()
    else:
        idea = validate_input(idea)

    config = create_session_config(idea, rounds=rounds, existing_spec=existing_spec)
    orchestrator = Orchestrator.new_session(config, LangChainGateway())
    asyncio.run(_drive(orchestrator))


def resume(session_dir: str) -> None:
    """Continue a session from its directory."""
    orchestrator = Orchestrator.resume(session_dir, LangChainGateway())
    if orchestrator.phase == "completed":
        final_path = orchestrator.session_dir / orchestrator.state["final_ref"]
        print(f"[SpecForge] Session already complete: {final_path}")
        return
    asyncio.run(_drive(orchestrator))


def show_sessions() -> None:
    output_dir = get_config().get("output_dir", "./output")
    sessions = list_sessions(Path(output_dir))
    if not sessions:
        print(f"No sessions in {output_dir}")
        return
    for session in sessions:
        marker = " (resumable)" if session["can_resume"] else ""
        print(f"{session['name']}  {session['phase']}{marker}")


def _pop_option(args: list[str], name: str) -> str | None:
    if name not in args:
        return None
    index = args.index(name)
    if index + 1 >= len(args):
        raise ValueError(f"{name} requires a value")
    value = args[index + 1]
    del args[index:index + 2]
    return value


def main() -> None:
    """CLI entry point: accepts the idea as arguments or from stdin."""
    logging.basicConfig(level=logging.WARNING, format="[SpecForge] %(message)s", stream=sys.stderr)
    args = sys.argv[1:]

    if "--help" in args or "-h" in args:
        print(USAGE)
        return
    if "--list" in args:
        show_sessions()
        return

    try:
        resume_dir = _pop_option(args, "--resume")
        spec_path = _pop_option(args, "--spec")
        rounds_arg = _pop_option(args, "--rounds")
        rounds = int(rounds_arg) if rounds_arg is not None else None
    except ValueError as exc:
        print(f"[SpecForge] {exc}\n\n{USAGE}", file=sys.stderr)
        sys.exit(2)

    try:
        if resume_dir:
            resume(resume_dir)
            return

        if args:
            idea = " ".join(args)
        elif spec_path:
            idea = ""
        else:
            print("Enter your app idea (Ctrl+D / Ctrl+Z to submit):")
            idea = sys.stdin.read()
        run(idea, rounds=rounds, spec_path=spec_path)
    except SpecForgeError as exc:
        print(f"[SpecForge] Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except (ValueError, OSError) as exc:
        print(f"[SpecForge] {exc}", file=sys.stderr)
        sys.exit(2)
    except KeyboardInterrupt:
        print("\n[SpecForge] Interrupted. Committed progress is kept; continue with --resume.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    main()
