"""Lifecycle events emitted by the orchestrator.

Two ways to listen, both delivering events in emission order:
- `subscribe(callback)` for synchronous observers;
- `channel()` for an asyncio.Queue the caller drains. `close()` ends every
  channel with a None sentinel.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Literal

logger = logging.getLogger(__name__)

EventType = Literal[
    "state_change",
    "preflight_start",
    "preflight_model",
    "preflight_complete",
    "clarification_start",
    "clarification_response",
    "clarification_ready",
    "clarification_forced",
    "snapshot_start",
    "snapshot_complete",
    "draft_start",
    "draft_complete",
    "review_round_start",
    "reviewer_start",
    "reviewer_complete",
    "review_round_complete",
    "revision_start",
    "revision_complete",
    "retry",
    "session_complete",
    "aborted",
    "error",
    "token",
]


@dataclass(frozen=True)
class OrchestratorEvent:
    type: EventType
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


Subscriber = Callable[[OrchestratorEvent], None]


class EventBus:
    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._channels: list[asyncio.Queue] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback. Returns a callable that removes it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def channel(self, maxsize: int = 0) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize)
        self._channels.append(queue)
        return queue

    def emit(self, type: EventType, message: str = "", **data) -> OrchestratorEvent:
        event = OrchestratorEvent(type=type, message=message, data=data)
        if type != "token":
            logger.debug("event %s: %s", type, message)
        for callback in list(self._subscribers):
            callback(event)
        for queue in self._channels:
            queue.put_nowait(event)
        return event

    def close(self) -> None:
        for queue in self._channels:
            queue.put_nowait(None)
        self._channels.clear()
