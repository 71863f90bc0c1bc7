"""Shared fixtures for the SpecForge test suite."""

import asyncio
import json
from unittest.mock import patch

import pytest

from specforge.config import default_prompts


class FakeGateway:
    """Scripted ModelGateway.

    Streaming calls (writer) pop from `writer_replies`. `complete` calls
    return `revision` for the writer model, otherwise the entry in `reviews`
    for the model: a string, an exception to raise, or a list consumed one
    item per call.
    """

    def __init__(
        self,
        writer_model: str = "claude-writer",
        writer_replies: list[str] | None = None,
        reviews: dict | None = None,
        unreachable: set[str] | None = None,
        revision: str = "Revised spec body.\n\n## Revision Notes\nAddressed reviewer feedback.",
    ):
        self.writer_model = writer_model
        self.writer_replies = list(writer_replies or [])
        self.reviews = dict(reviews or {})
        self.unreachable = set(unreachable or ())
        self.revision = revision
        self.calls: list[tuple[str, str, list[dict]]] = []

    def calls_to(self, method: str, model: str | None = None) -> list[list[dict]]:
        return [
            messages for name, called_model, messages in self.calls
            if name == method and (model is None or called_model == model)
        ]

    async def test_reachable(self, model_id: str) -> bool:
        self.calls.append(("test_reachable", model_id, []))
        if model_id in self.unreachable:
            raise RuntimeError("invalid x-api-key")
        return True

    async def complete(self, model_id: str, messages: list[dict]) -> str:
        self.calls.append(("complete", model_id, messages))
        if model_id == self.writer_model:
            return self.revision
        result = self.reviews.get(model_id, f"Review from {model_id}: looks solid.")
        if isinstance(result, list):
            result = result.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    async def complete_streaming(self, model_id: str, messages: list[dict]):
        self.calls.append(("stream", model_id, messages))
        text = self.writer_replies.pop(0) if self.writer_replies else "Generated text."
        for start in range(0, len(text), 16):
            await asyncio.sleep(0)
            yield text[start:start + 16]


def ready_reply(message: str = "I have what I need.") -> str:
    return json.dumps({"ready": True, "message": message})


def question_reply(message: str = "Who are the users?") -> str:
    return json.dumps({"ready": False, "message": message})


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def gateway():
    """Gateway scripted for one ready clarification, a snapshot and a draft."""
    return FakeGateway(writer_replies=[ready_reply(), "Snapshot body", "Draft body"])


@pytest.fixture
def session_config(tmp_path):
    """Valid SessionConfig: one round, two reviewers."""
    return {
        "idea": "a todo app",
        "writer_model": "claude-writer",
        "reviewer_models": ["model-a", "model-b"],
        "rounds": 1,
        "prompts": default_prompts(),
        "output_dir": str(tmp_path / "output"),
        "created_at": "2026-01-01T00:00:00+00:00",
        "existing_spec": None,
    }


@pytest.fixture
def base_state():
    """Fresh idle WorkflowState."""
    from specforge.state import create_initial_state

    return create_initial_state()


@pytest.fixture
def mock_config(tmp_path):
    """Patch the config singleton with test-friendly values."""
    test_config = {
        "writer_model": "claude-writer",
        "reviewer_models": ["model-a", "model-b"],
        "rounds": 2,
        "concurrency_limit": 5,
        "output_dir": str(tmp_path / "output"),
        "temperature": 0,
        "request_timeout_s": 30,
        "retry": {"max_retries": 3, "max_duration_s": 300},
        "preflight_retry": {"max_retries": 2, "max_duration_s": 60},
        "review_retry": {"max_retries": 3, "max_duration_s": 300},
        "revision_retry": {"max_retries": 3, "max_duration_s": 300},
    }
    with patch("specforge.config._config", test_config):
        yield test_config
