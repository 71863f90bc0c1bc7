"""Tests for the LangChain-backed model gateway."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import FakeGateway
from specforge.errors import TransientProviderFault
from specforge.gateway import (
    LangChainGateway,
    ModelGateway,
    content_text,
    create_chat_model,
    resolve_provider,
)


def _message(content):
    message = MagicMock()
    message.content = content
    return message


class _FakeModel:
    """Chat model double with scripted ainvoke / astream results."""

    def __init__(self, reply="", chunks=()):
        self.ainvoke = AsyncMock(return_value=_message(reply))
        self._chunks = list(chunks)

    async def astream(self, messages):
        for chunk in self._chunks:
            yield _message(chunk)


class TestResolveProvider:
    @pytest.mark.parametrize("model_id, expected", [
        ("claude-sonnet-4-5", ("anthropic", "claude-sonnet-4-5")),
        ("gemini-2.5-pro", ("google", "gemini-2.5-pro")),
        ("anthropic/claude-opus-4-1", ("anthropic", "claude-opus-4-1")),
        ("google/gemini-2.5-flash", ("google", "gemini-2.5-flash")),
    ])
    def test_known_ids(self, model_id, expected):
        assert resolve_provider(model_id) == expected

    def test_unknown_id_raises(self):
        with pytest.raises(ValueError, match="Cannot determine provider"):
            resolve_provider("gpt-4o")


class TestCreateChatModel:
    @patch("specforge.gateway.ChatAnthropic")
    def test_anthropic_client_without_sdk_retries(self, mock_cls, mock_config):
        create_chat_model("anthropic/claude-opus-4-1")
        mock_cls.assert_called_once_with(model="claude-opus-4-1", temperature=0, timeout=30, max_retries=0)

    @patch("specforge.gateway.ChatGoogleGenerativeAI")
    def test_google_client(self, mock_cls, mock_config):
        create_chat_model("gemini-2.5-pro")
        mock_cls.assert_called_once_with(model="gemini-2.5-pro", temperature=0, timeout=30, max_retries=0)


class TestContentText:
    def test_string(self):
        assert content_text("hello") == "hello"

    def test_blocks(self):
        blocks = [{"type": "text", "text": "a"}, {"type": "tool_use", "id": "x"}, "b"]
        assert content_text(blocks) == "ab"

    def test_none(self):
        assert content_text(None) == ""


class TestLangChainGateway:
    def test_models_cached_per_instance(self):
        factory = MagicMock(side_effect=lambda model_id: _FakeModel(reply="hi"))
        gateway = LangChainGateway(model_factory=factory)
        asyncio.run(gateway.complete("m", []))
        asyncio.run(gateway.complete("m", []))
        assert factory.call_count == 1
        LangChainGateway(model_factory=factory)._model("m")
        assert factory.call_count == 2

    def test_complete_returns_text(self):
        model = _FakeModel(reply=[{"type": "text", "text": "Review text"}])
        gateway = LangChainGateway(model_factory=lambda _: model)
        assert asyncio.run(gateway.complete("m", [{"role": "user", "content": "x"}])) == "Review text"
        model.ainvoke.assert_awaited_once_with([{"role": "user", "content": "x"}])

    def test_empty_completion_is_transient(self):
        gateway = LangChainGateway(model_factory=lambda _: _FakeModel(reply="   "))
        with pytest.raises(TransientProviderFault, match="Empty response from m"):
            asyncio.run(gateway.complete("m", []))

    def test_streaming_yields_fragments(self):
        gateway = LangChainGateway(model_factory=lambda _: _FakeModel(chunks=["Hel", "", "lo"]))

        async def collect():
            return [f async for f in gateway.complete_streaming("m", [])]

        assert asyncio.run(collect()) == ["Hel", "lo"]

    def test_empty_stream_is_transient(self):
        gateway = LangChainGateway(model_factory=lambda _: _FakeModel(chunks=[]))

        async def collect():
            return [f async for f in gateway.complete_streaming("m", [])]

        with pytest.raises(TransientProviderFault):
            asyncio.run(collect())

    def test_reachable(self):
        model = _FakeModel(reply="Hello!")
        gateway = LangChainGateway(model_factory=lambda _: model)
        assert asyncio.run(gateway.test_reachable("m")) is True
        model.ainvoke.assert_awaited_once()

    def test_reachability_failure_propagates(self):
        model = _FakeModel()
        model.ainvoke.side_effect = RuntimeError("invalid x-api-key")
        gateway = LangChainGateway(model_factory=lambda _: model)
        with pytest.raises(RuntimeError):
            asyncio.run(gateway.test_reachable("m"))


class TestProtocol:
    def test_implementations_satisfy_protocol(self):
        assert isinstance(LangChainGateway(model_factory=MagicMock()), ModelGateway)
        assert isinstance(FakeGateway(), ModelGateway)
