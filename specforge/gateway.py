"""Model Gateway: the single call contract the orchestrator needs from a provider.

`LangChainGateway` implements it over LangChain chat models. Each gateway
instance owns its own model clients; the orchestrator receives the instance
explicitly, so there is no process-wide client cache.
"""

import logging
from typing import AsyncIterator, Callable, Protocol, runtime_checkable

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_google_genai import ChatGoogleGenerativeAI

from specforge.config import get_config
from specforge.errors import TransientProviderFault

logger = logging.getLogger(__name__)

REACHABILITY_PROMPT = [{"role": "user", "content": "Hi"}]

_PROVIDER_PREFIXES = {
    "anthropic/": "anthropic",
    "google/": "google",
}


@runtime_checkable
class ModelGateway(Protocol):
    async def test_reachable(self, model_id: str) -> bool:
        """Return True if the model answers; raise on failure."""
        ...

    async def complete(self, model_id: str, messages: list[dict]) -> str:
        """Return the full completion text."""
        ...

    def complete_streaming(self, model_id: str, messages: list[dict]) -> AsyncIterator[str]:
        """Yield text fragments. Finite, not restartable; may fail mid-stream."""
        ...


def resolve_provider(model_id: str) -> tuple[str, str]:
    """Map a model id to (provider, provider-side model name)."""
    for prefix, provider in _PROVIDER_PREFIXES.items():
        if model_id.startswith(prefix):
            return provider, model_id[len(prefix):]
    lowered = model_id.lower()
    if lowered.startswith("claude"):
        return "anthropic", model_id
    if lowered.startswith("gemini"):
        return "google", model_id
    raise ValueError(
        f"Cannot determine provider for model '{model_id}'. "
        "Use a claude-* or gemini-* id, or an anthropic/ or google/ prefix."
    )


def create_chat_model(model_id: str) -> BaseChatModel:
    """Build a LangChain chat model for `model_id` from config.yaml settings.

    Client-side retries are disabled; retry policy belongs to the orchestrator.
    """
    config = get_config()
    temperature = config.get("temperature", 0)
    timeout = config.get("request_timeout_s")
    provider, name = resolve_provider(model_id)

    if provider == "anthropic":
        return ChatAnthropic(model=name, temperature=temperature, timeout=timeout, max_retries=0)
    return ChatGoogleGenerativeAI(model=name, temperature=temperature, timeout=timeout, max_retries=0)


def content_text(content) -> str:
    """Flatten a LangChain message content (str or list of blocks) into text."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type", "text") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


class LangChainGateway:
    """ModelGateway backed by LangChain chat models, one client per model id."""

    def __init__(self, model_factory: Callable[[str], BaseChatModel] = create_chat_model):
        self._model_factory = model_factory
        self._models: dict[str, BaseChatModel] = {}

    def _model(self, model_id: str) -> BaseChatModel:
        if model_id not in self._models:
            self._models[model_id] = self._model_factory(model_id)
        return self._models[model_id]

    async def test_reachable(self, model_id: str) -> bool:
        await self._model(model_id).ainvoke(REACHABILITY_PROMPT)
        logger.debug("Model %s is reachable", model_id)
        return True

    async def complete(self, model_id: str, messages: list[dict]) -> str:
        response = await self._model(model_id).ainvoke(messages)
        text = content_text(response.content)
        if not text.strip():
            raise TransientProviderFault(f"Empty response from {model_id}", model_id=model_id)
        return text

    async def complete_streaming(self, model_id: str, messages: list[dict]) -> AsyncIterator[str]:
        received = False
        async for chunk in self._model(model_id).astream(messages):
            text = content_text(chunk.content)
            if text:
                received = True
                yield text
        if not received:
            raise TransientProviderFault(f"Empty streamed response from {model_id}", model_id=model_id)
