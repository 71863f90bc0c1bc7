"""Orchestrator: drives one session from preflight to the final spec.

Phases run strictly in sequence. Each phase procedure writes its artifact,
then updates and persists the workflow state, then emits events; so the
state file only ever references artifacts that are already on disk. Only
the reviewer fan-out runs concurrently.

Failures (other than illegal transitions) move the run to `error`, persist
`last_error` and are re-raised. `retry_from_error()` re-enters the failed
phase; `resume()` picks a session up from its directory.
"""

import asyncio
import copy
import inspect
import logging
from contextlib import contextmanager
from functools import partial
from pathlib import Path
from typing import Awaitable, Callable, TypedDict

from specforge.agents import reviewer, writer
from specforge.config import SessionConfig, get_config, retry_settings
from specforge.errors import (
    InvalidTransition,
    RoundFailure,
    SpecForgeError,
    StorageFault,
    Unreachable,
    WorkflowAborted,
)
from specforge.events import EventBus
from specforge.gateway import ModelGateway
from specforge.graph import RoundLoopState, build_round_graph, recursion_limit
from specforge.state import (
    RoundState,
    WorkflowState,
    ensure_round,
    failed_reviewers,
    get_round,
    has_round_error,
    make_error,
    pending_reviewers,
)
from specforge.state_machine import PhaseStateMachine
from specforge.storage import FEEDBACK_DIR, SessionStore, create_session_directory
from specforge.transcript import (
    Transcript,
    add_assistant_message,
    add_user_message,
    create_transcript,
)
from specforge.utils import formatter
from specforge.utils.concurrency import DEFAULT_LIMIT
from specforge.utils.retry import with_retry
from specforge.utils.validator import validate_answer

logger = logging.getLogger(__name__)

AnswerCallback = Callable[[writer.ClarificationReply | None], Awaitable[str | None] | str | None]


class PreflightModelResult(TypedDict):
    model_id: str
    reachable: bool
    error: str | None


class PreflightResult(TypedDict):
    success: bool
    results: list[PreflightModelResult]


class Orchestrator:
    """Runs the spec workflow for a single session directory."""

    def __init__(
        self,
        gateway: ModelGateway,
        *,
        concurrency_limit: int | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.gateway = gateway
        self.events = EventBus()
        self.concurrency_limit = concurrency_limit or get_config().get("concurrency_limit", DEFAULT_LIMIT)
        self.config: SessionConfig | None = None
        self.store: SessionStore | None = None
        self.state: WorkflowState | None = None
        self.transcript: Transcript | None = None
        self.machine = PhaseStateMachine()
        self._sleep = sleep
        self._forced = False
        self._aborted = False
        self._inflight: set[asyncio.Future] = set()
        self._persist_lock = asyncio.Lock()
        self._last_reply: writer.ClarificationReply | None = None

    # --- construction ---

    @classmethod
    def new_session(
        cls,
        config: SessionConfig,
        gateway: ModelGateway,
        base_dir: str | Path | None = None,
        **kwargs,
    ) -> "Orchestrator":
        """Create a session directory for `config` and return an idle orchestrator."""
        label = config["idea"] or "refinement"
        session_dir = create_session_directory(Path(base_dir or config["output_dir"]), label)
        store = SessionStore(session_dir)
        state = store.initialize(config)

        orchestrator = cls(gateway, **kwargs)
        orchestrator._attach(store, config, state, PhaseStateMachine("idle", 0, config["rounds"]))
        store.append_log(
            "Session Initialized",
            f"Session directory: {session_dir}\n"
            f"{len(config['reviewer_models'])} reviewer(s), {config['rounds']} round(s).",
        )
        logger.info("Created session %s", session_dir)
        return orchestrator

    @classmethod
    def resume(cls, session_dir: str | Path, gateway: ModelGateway, **kwargs) -> "Orchestrator":
        """Load a session from disk and rebuild the phase machine from its state.

        Leftover .partial files are deleted first. A run persisted mid-phase
        re-enters that phase from idle; completed sessions load as completed.
        """
        store = SessionStore(Path(session_dir))
        if not store.session_dir.is_dir():
            raise StorageFault(f"Session directory not found: {session_dir}")
        store.clean_partials()

        config = store.load_config()
        state = store.load_state()
        if config is None or state is None:
            raise StorageFault(f"{session_dir} is not a SpecForge session")

        persisted_phase = state["phase"]
        initial = "completed" if persisted_phase == "completed" else "idle"
        machine = PhaseStateMachine(initial, state["current_round"], config["rounds"])

        orchestrator = cls(gateway, **kwargs)
        orchestrator._attach(store, config, state, machine)
        orchestrator.transcript = store.load_transcript()
        if persisted_phase not in ("idle", "completed"):
            machine.transition(persisted_phase)

        store.append_log("Session Resumed", f"Resuming from phase: {persisted_phase}")
        logger.info("Resumed session %s in phase %s", store.session_dir, persisted_phase)
        return orchestrator

    def _attach(
        self,
        store: SessionStore,
        config: SessionConfig,
        state: WorkflowState,
        machine: PhaseStateMachine,
    ) -> None:
        self.store = store
        self.config = config
        self.state = state
        self.machine = machine
        self.machine.subscribe(self._on_transition)

    # --- introspection ---

    @property
    def session_dir(self) -> Path:
        return self.store.session_dir

    @property
    def phase(self) -> str:
        return self.machine.phase

    @property
    def is_ready(self) -> bool:
        """True once the writer signalled readiness or the caller forced progress."""
        return self._forced or bool(self.state and self.state["clarification_ready"])

    def snapshot_state(self) -> WorkflowState:
        """A deep copy of the current workflow state."""
        return copy.deepcopy(self.state)

    def pending_reviewers(self, round_number: int) -> list[str]:
        round_state = get_round(self.state, round_number)
        models = self.config["reviewer_models"]
        if round_state is None:
            return list(models)
        return pending_reviewers(round_state, models)

    # --- internals ---

    def _on_transition(self, from_phase: str, to_phase: str) -> None:
        self.state["phase"] = to_phase
        self.events.emit(
            "state_change",
            self.machine.describe(),
            from_phase=from_phase,
            to_phase=to_phase,
        )

    def _enter(self, phase: str) -> None:
        """Transition to `phase` unless already there, then persist."""
        if self.machine.phase != phase:
            self.machine.transition(phase)
        self._persist()

    def _persist(self) -> None:
        self.store.save_state(self.state)

    def _log(self, event: str, details: str | None = None) -> None:
        self.store.append_log(event, details)

    def _check_aborted(self) -> None:
        if self._aborted:
            raise WorkflowAborted("Session aborted")

    def _require_session(self) -> None:
        if self.store is None or self.config is None:
            raise SpecForgeError("No session loaded; use new_session() or resume()")

    async def _guard(self, awaitable: Awaitable):
        """Await `awaitable` as a cancellable task tracked for abort()."""
        self._check_aborted()
        task = asyncio.ensure_future(awaitable)
        self._inflight.add(task)
        try:
            return await task
        except asyncio.CancelledError:
            if self._aborted:
                raise WorkflowAborted("Session aborted") from None
            raise
        finally:
            self._inflight.discard(task)

    @contextmanager
    def _failure_boundary(self, phase: str):
        try:
            yield
        except InvalidTransition:
            raise
        except Exception as exc:
            if self.machine.phase != "error":
                self._fail(exc, phase)
            raise

    def _fail(self, exc: Exception, phase: str) -> None:
        message = str(exc)
        model_id = getattr(exc, "model_id", None)
        self.state["last_error"] = make_error(message, phase, model_id)
        if self.machine.can_transition("error"):
            self.machine.transition("error")
        self._persist()
        details = f"Phase: {phase}\n{message}"
        if model_id:
            details += f"\nModel: {model_id}"
        self._log("Error", details)
        self.events.emit("error", message, phase=phase, model_id=model_id)
        logger.error("%s failed: %s", phase, message)

    def _retry_kwargs(self, profile: str) -> dict:
        def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            self.events.emit("retry", f"Retrying after: {exc}", attempt=attempt, delay=delay)

        return {**retry_settings(profile), "on_retry": _on_retry, "sleep": self._sleep}

    async def _stream_writer(self, messages: list[dict], label: str) -> str:
        model = self.config["writer_model"]

        async def _collect() -> str:
            parts = []
            async for fragment in self.gateway.complete_streaming(model, messages):
                self._check_aborted()
                parts.append(fragment)
                self.events.emit("token", fragment, model_id=model)
            return "".join(parts)

        return await self._guard(with_retry(_collect, label=label, **self._retry_kwargs("retry")))

    async def _complete_writer(self, messages: list[dict], label: str) -> str:
        operation = partial(self.gateway.complete, self.config["writer_model"], messages)
        return await self._guard(
            with_retry(operation, label=label, **self._retry_kwargs("revision_retry"))
        )

    def _load_snapshot(self) -> str:
        snapshot = self.store.load_text(self.state["snapshot_ref"])
        if snapshot is None:
            raise StorageFault("Requirements snapshot is missing")
        return snapshot

    def _load_current_spec(self) -> str:
        version = self.state["latest_artifact_version"]
        spec = self.store.load_spec(version) if version else None
        if spec is None:
            raise StorageFault(f"Specification v{version} is missing")
        return formatter.strip_spec_header(spec)

    # --- preflight ---

    async def run_preflight(self) -> PreflightResult:
        """Check that the writer and every reviewer answer a trivial prompt."""
        self._require_session()
        with self._failure_boundary("preflight"):
            self._enter("preflight")
            models = list(dict.fromkeys([self.config["writer_model"], *self.config["reviewer_models"]]))
            self.events.emit("preflight_start", "Checking model availability", models=models)
            self._log("Preflight Started", f"Testing {len(models)} model(s)")

            results: list[PreflightModelResult] = []
            for model in models:
                self.events.emit("preflight_model", f"Testing {model}", model_id=model)
                try:
                    reachable = await self._guard(with_retry(
                        partial(self.gateway.test_reachable, model),
                        label=f"preflight {model}",
                        **self._retry_kwargs("preflight_retry"),
                    ))
                    error = None if reachable else "Model did not respond"
                except WorkflowAborted:
                    raise
                except Exception as exc:
                    reachable, error = False, str(exc)

                results.append({"model_id": model, "reachable": bool(reachable), "error": error})
                if not reachable:
                    self.events.emit(
                        "preflight_complete", f"{model} is not reachable",
                        success=False, results=results,
                    )
                    raise Unreachable(f"Model {model} is not reachable: {error}", model_id=model)

            self.events.emit("preflight_complete", "All models reachable", success=True, results=results)
            self._log("Preflight Passed", ", ".join(models))
            return {"success": True, "results": results}

    # --- clarification ---

    async def start_clarification(self) -> writer.ClarificationReply:
        """Open the clarification transcript and return the writer's first reply."""
        self._require_session()
        with self._failure_boundary("clarifying"):
            self._enter("clarifying")
            existing_spec = self.config.get("existing_spec")
            prompts = self.config["prompts"]
            system_prompt = prompts["clarify_refinement"] if existing_spec else prompts["clarify"]
            self.state["clarification_ready"] = False
            self._forced = False
            self.events.emit("clarification_start", "Starting clarification")
            self._log("Clarification Started", "Refinement mode" if existing_spec else None)
            transcript = create_transcript(system_prompt, self.config["idea"], existing_spec)
            return await self._clarification_exchange(transcript)

    async def send_clarification_response(self, text: str) -> writer.ClarificationReply:
        """Add the user's answer to the transcript and return the writer's next reply."""
        self._require_session()
        if self.machine.phase != "clarifying" or self.transcript is None:
            raise SpecForgeError("Clarification has not started")
        answer = validate_answer(text)
        if answer is None:
            raise ValueError("Answer must be a non-empty string.")
        with self._failure_boundary("clarifying"):
            return await self._clarification_exchange(add_user_message(self.transcript, answer))

    async def _clarification_exchange(self, transcript: Transcript) -> writer.ClarificationReply:
        raw = await self._stream_writer(transcript["api_messages"], "clarification")
        reply = writer.parse_clarification_reply(raw)

        self.transcript = add_assistant_message(transcript, reply["message"])
        path = self.store.save_transcript(self.transcript)
        self.state["transcript_ref"] = self.store.ref(path)
        self.state["clarification_ready"] = reply["ready"]
        self._persist()
        self._last_reply = reply

        self.events.emit("clarification_response", reply["message"], ready=reply["ready"], notes=reply["notes"])
        if reply["ready"]:
            self.events.emit("clarification_ready", reply["message"], notes=reply["notes"])
            self._log("Clarification Complete", "Writer signalled readiness")
        return reply

    def force_progress(self) -> None:
        """Leave clarification without a ready signal. The transcript is kept as is."""
        if self.machine.phase != "clarifying":
            raise InvalidTransition(self.machine.phase, "snapshotting")
        self._forced = True
        self.events.emit("clarification_forced", "Proceeding without a ready signal")
        self._log("Force Progress", "User chose to proceed before the writer was ready")

    # --- snapshot & draft ---

    async def generate_snapshot(self) -> str:
        """Condense idea + transcript into requirements-snapshot.md."""
        self._require_session()
        with self._failure_boundary("snapshotting"):
            self._enter("snapshotting")
            self.events.emit("snapshot_start", "Generating requirements snapshot")
            transcript = self.transcript or {"display_messages": [], "api_messages": []}
            messages = writer.build_snapshot_messages(
                self.config["prompts"]["snapshot"],
                self.config["idea"],
                transcript,
                self.config.get("existing_spec"),
            )
            content = await self._stream_writer(messages, "snapshot")
            self._check_aborted()

            path = self.store.save_snapshot(
                formatter.render_snapshot(content, self.config["writer_model"], self.config["idea"])
            )
            self.state["snapshot_ref"] = self.store.ref(path)
            self._persist()
            self.events.emit("snapshot_complete", "Requirements snapshot saved", path=str(path))
            self._log("Snapshot Generated", f"Saved to {path.name}")
            return content

    async def generate_draft(self) -> str:
        """Write spec-v1.md from the snapshot, the idea and the transcript."""
        self._require_session()
        with self._failure_boundary("drafting"):
            snapshot = self._load_snapshot()
            self._enter("drafting")
            self.events.emit("draft_start", "Writing initial specification")
            messages = writer.build_draft_messages(
                self.config["prompts"]["draft"],
                snapshot,
                self.config["idea"],
                self.transcript,
                self.config.get("existing_spec"),
            )
            content = await self._stream_writer(messages, "draft")
            self._check_aborted()

            app_name = formatter.app_name_from_idea(self.config["idea"])
            path = self.store.save_spec(1, formatter.render_spec(content, 1, self.config["writer_model"], app_name))
            self.state["latest_artifact_version"] = 1
            self._persist()
            self.events.emit("draft_complete", "Initial specification saved", version=1, path=str(path))
            self._log("Draft Generated", f"Saved to {path.name}")
            return content

    # --- review rounds ---

    def _next_round_number(self) -> int:
        current = self.state["current_round"]
        round_state = get_round(self.state, current)
        if current > 0 and round_state is not None and not round_state["revised_artifact_ref"]:
            return current
        return current + 1

    async def run_review_round(self, round_number: int | None = None) -> str:
        """Collect feedback from every reviewer still pending in the round.

        Returns the aggregated bundle. Raises RoundFailure if any reviewer
        ended in error; the round then has no bundle.
        """
        self._require_session()
        r = round_number or self._next_round_number()
        models = self.config["reviewer_models"]

        with self._failure_boundary("reviewing"):
            snapshot = self._load_snapshot()
            current_spec = self._load_current_spec()
            version = self.state["latest_artifact_version"]

            round_state = ensure_round(self.state, r, models)
            for call in round_state["reviewers"].values():
                if call["status"] == "error":
                    call["status"] = "pending"
                    call.pop("error", None)
            self.state["current_round"] = r
            self.machine.set_current_round(r)
            self._enter("reviewing")

            if round_state["aggregate_ref"]:
                bundle = self.store.load_text(round_state["aggregate_ref"])
                if bundle is not None:
                    return bundle

            pending = pending_reviewers(round_state, models)
            self.events.emit(
                "review_round_start",
                f"Round {r}: {len(pending)} of {len(models)} reviewer(s) pending",
                round=r,
                pending=pending,
            )
            self._log(f"Review Round {r} Started", f"Reviewers: {', '.join(pending)}")

            def _on_start(model: str) -> None:
                self.events.emit("reviewer_start", f"{model} reviewing", round=r, model_id=model)

            async def _on_complete(feedback: reviewer.ReviewerFeedback) -> None:
                model = feedback["model_id"]
                call = round_state["reviewers"][model]
                if feedback["status"] == "success":
                    path = self.store.save_reviewer_response(
                        r, model,
                        formatter.render_reviewer_response(model, r, feedback["content"], feedback["duration_ms"]),
                    )
                    call.update(
                        status="complete",
                        artifact_ref=self.store.ref(path),
                        duration_ms=feedback["duration_ms"],
                    )
                else:
                    call.update(status="error", duration_ms=feedback["duration_ms"], error=feedback["error"])
                async with self._persist_lock:
                    self._persist()
                self.events.emit(
                    "reviewer_complete",
                    f"{model}: {feedback['status']}",
                    round=r,
                    model_id=model,
                    status=feedback["status"],
                    duration_ms=feedback["duration_ms"],
                )

            messages = reviewer.build_review_messages(self.config["prompts"]["review"], snapshot, current_spec)
            await self._guard(reviewer.run_review_round(
                self.gateway,
                pending,
                messages,
                limit=self.concurrency_limit,
                retry=self._retry_kwargs("review_retry"),
                on_start=_on_start,
                on_complete=_on_complete,
            ))
            self._check_aborted()

            if has_round_error(round_state):
                raise RoundFailure(r, failed_reviewers(round_state))

            feedbacks = [self._committed_feedback(round_state, model) for model in models]
            bundle = reviewer.aggregate_feedback(r, version, feedbacks)
            path = self.store.save_feedback_bundle(r, bundle)
            round_state["aggregate_ref"] = self.store.ref(path)
            self._persist()
            self.events.emit("review_round_complete", f"Round {r} feedback collected", round=r, path=str(path))
            self._log(f"Review Round {r} Complete", f"Feedback saved to {FEEDBACK_DIR}/{path.name}")
            return bundle

    def _committed_feedback(self, round_state: RoundState, model: str) -> reviewer.ReviewerFeedback:
        call = round_state["reviewers"][model]
        text = self.store.load_text(call["artifact_ref"])
        if text is None:
            raise StorageFault(f"Response from {model} is missing", model_id=model)
        return {
            "model_id": model,
            "status": "success",
            "content": formatter.strip_reviewer_header(text),
            "duration_ms": call["duration_ms"] or 0,
            "error": None,
        }

    async def run_revision(self, round_number: int | None = None) -> str:
        """Revise the spec with round r's bundle. The final round completes the session."""
        self._require_session()
        r = round_number or self.state["current_round"]

        with self._failure_boundary("revising"):
            round_state = get_round(self.state, r)
            bundle = self.store.load_text(round_state["aggregate_ref"]) if round_state else None
            if bundle is None:
                raise StorageFault(f"Round {r} has no feedback bundle")
            self.state["current_round"] = r
            self.machine.set_current_round(r)

            if round_state["revised_artifact_ref"]:
                self._enter("revising")
                content = self.store.load_text(round_state["revised_artifact_ref"]) or ""
            else:
                snapshot = self._load_snapshot()
                current_spec = self._load_current_spec()
                self._enter("revising")
                version = self.state["latest_artifact_version"] + 1
                self.events.emit("revision_start", f"Revising specification (round {r})", round=r, version=version)

                messages = writer.build_revision_messages(
                    self.config["prompts"]["revise"], snapshot, current_spec, bundle
                )
                content = await self._complete_writer(messages, f"revision {r}")
                self._check_aborted()

                app_name = formatter.app_name_from_idea(self.config["idea"])
                path = self.store.save_spec(
                    version,
                    formatter.render_spec(
                        content, version, self.config["writer_model"], app_name,
                        require_revision_notes=True,
                    ),
                )
                self.state["latest_artifact_version"] = version
                round_state["revised_artifact_ref"] = self.store.ref(path)
                self._persist()
                self.events.emit("revision_complete", f"Specification v{version} saved", round=r, version=version)
                self._log(f"Revision {r} Complete", f"Saved to {path.name}")

            if r >= self.config["rounds"]:
                self._complete_session()
            return content

    def _complete_session(self) -> None:
        version = self.state["latest_artifact_version"]
        path = self.store.copy_final(version)
        self.state["final_ref"] = self.store.ref(path)
        self.machine.transition("completed")
        self._persist()
        self.events.emit("session_complete", "Specification complete", version=version, path=str(path))
        self._log("Session Complete", f"Final specification: v{version}")
        logger.info("Session %s complete at v%d", self.store.session_dir, version)

    async def run_rounds(self) -> WorkflowState:
        """Run review/revise rounds until the configured count is reached."""
        self._require_session()
        total = self.config["rounds"]
        if self.machine.phase == "revising":
            start, entry = self.state["current_round"], "revise"
        else:
            start, entry = self._next_round_number(), "review"

        async def _review(loop_state: RoundLoopState) -> dict:
            await self.run_review_round(loop_state["round"])
            return {"status": "in_progress"}

        async def _revise(loop_state: RoundLoopState) -> dict:
            await self.run_revision(loop_state["round"])
            return {"status": "completed" if self.machine.phase == "completed" else "in_progress"}

        graph = build_round_graph(_review, _revise)
        await graph.ainvoke(
            {"round": start, "total_rounds": total, "entry": entry, "status": "in_progress"},
            config={"recursion_limit": recursion_limit(total)},
        )
        return self.state

    # --- driver ---

    def _derive_resume_phase(self) -> str | None:
        """Phase to re-enter from idle given what has been committed, or None for a fresh run."""
        if self.state["latest_artifact_version"] >= 1:
            round_state = get_round(self.state, self.state["current_round"])
            if round_state and round_state["aggregate_ref"] and not round_state["revised_artifact_ref"]:
                return "revising"
            return "reviewing"
        if self.state["snapshot_ref"]:
            return "drafting"
        if self.state["transcript_ref"]:
            return "clarifying"
        return None

    async def _clarify(self, answer: AnswerCallback | None) -> None:
        if self.machine.phase == "preflight" or self.transcript is None:
            reply = await self.start_clarification()
        else:
            reply = self._last_reply

        while not self.is_ready:
            response = answer(reply) if answer is not None else None
            if inspect.isawaitable(response):
                response = await response
            response = validate_answer(response)
            if response is None:
                self.force_progress()
                break
            reply = await self.send_clarification_response(response)

    async def run(self, answer: AnswerCallback | None = None) -> WorkflowState:
        """Continue the workflow from its current phase through completion.

        `answer` receives each clarification reply and returns the user's
        answer; returning None (or passing no callback) forces progression.
        """
        self._require_session()
        if self.machine.phase == "completed":
            return self.state
        if self.machine.phase == "error":
            raise SpecForgeError("Session is in error; call retry_from_error() or reset() first")

        if self.machine.phase == "idle":
            resume_at = self._derive_resume_phase()
            if resume_at is not None:
                self._enter(resume_at)

        if self.machine.phase in ("idle", "preflight"):
            await self.run_preflight()
        if self.machine.phase in ("preflight", "clarifying"):
            await self._clarify(answer)
        if self.machine.phase in ("clarifying", "snapshotting") and not self.state["snapshot_ref"]:
            await self.generate_snapshot()
        if self.machine.phase in ("snapshotting", "drafting") and not self.state["latest_artifact_version"]:
            await self.generate_draft()
        if self.machine.phase in ("drafting", "reviewing", "revising"):
            await self.run_rounds()
        return self.state

    # --- control ---

    def abort(self) -> None:
        """Stop the run. In-flight calls are cancelled and nothing partial is committed."""
        if self._aborted:
            return
        self._aborted = True
        for task in list(self._inflight):
            task.cancel()
        self.events.emit("aborted", "Session aborted by user")
        if self.store is not None:
            self._log("Aborted", "Session aborted by user")

    def retry_from_error(self) -> str:
        """Re-enter the phase that failed. Returns that phase."""
        self._require_session()
        if self.machine.phase != "error":
            raise InvalidTransition(self.machine.phase, "retry")
        last_error = self.state["last_error"] or {}
        target = last_error.get("phase") or "preflight"
        self.machine.transition(target)
        self.state["last_error"] = None
        self._aborted = False
        self._persist()
        self._log("Retry", f"Retrying from phase: {target}")
        return target

    def reset(self) -> None:
        """Return an errored session to idle. Committed artifacts are kept."""
        self._require_session()
        self.machine.transition("idle")
        self.state["last_error"] = None
        self._aborted = False
        self._forced = False
        self._persist()
        self._log("Reset", "Session returned to idle")
