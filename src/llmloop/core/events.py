"""Streaming events delivered to the caller's sink during one engine call.

The sink is any ``async (StreamEvent) -> None`` callable. ``EventBus`` is a
ready-made sink that buffers events for async iteration.
"""

import asyncio
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from llmloop.core.tool_protocol import ToolDataType

EventType = Literal[
    "message",  # content/reasoning slice from the model
    "tool_call",  # a tool is about to run
    "tool_message",  # progress emitted by a running tool
    "showing_tool",  # tool output meant for display
]


@dataclass
class StreamEvent:
    """Event emitted during an engine call."""

    type: EventType
    data: dict[str, Any]
    model_id: str
    ts: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        if not isinstance(self.data, dict):
            raise ValueError(f"Event data must be dict, got {type(self.data)}")

        if not self.model_id:
            raise ValueError("model_id is required for all events")


EventSink = Callable[[StreamEvent], Awaitable[None]]


async def discard(event: StreamEvent) -> None:
    """Default sink."""


class EventBus:
    """Buffering sink: pass ``bus`` as ``on_receive`` and iterate it elsewhere."""

    def __init__(self, max_history: int = 100) -> None:
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self._history: list[StreamEvent] = []
        self._max_history = max_history
        self._closed = False

    async def __call__(self, event: StreamEvent) -> None:
        if self._closed:
            return
        self._history.append(event)
        if len(self._history) > self._max_history:
            del self._history[0]
        await self._queue.put(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    @property
    def history(self) -> list[StreamEvent]:
        return list(self._history)

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


def _now() -> str:
    return datetime.now(UTC).isoformat()


def create_message_event(content: str, reasoning_content: str, model_id: str) -> StreamEvent:
    return StreamEvent(
        type="message",
        data={"content": content, "reasoning_content": reasoning_content},
        model_id=model_id,
        ts=_now(),
    )


def create_tool_call_event(
    call_id: str, tool_name: str, display_name: str | None, arguments: str, model_id: str
) -> StreamEvent:
    return StreamEvent(
        type="tool_call",
        data={
            "id": call_id,
            "name": tool_name,
            "display_name": display_name or tool_name,
            "arguments": arguments,
        },
        model_id=model_id,
        ts=_now(),
    )


def create_tool_message_event(call_id: str, content: str, model_id: str) -> StreamEvent:
    return StreamEvent(
        type="tool_message",
        data={"id": call_id, "content": content},
        model_id=model_id,
        ts=_now(),
    )


def create_showing_tool_event(content: str, kind: ToolDataType, model_id: str) -> StreamEvent:
    return StreamEvent(
        type="showing_tool",
        data={"content": content, "kind": kind.value},
        model_id=model_id,
        ts=_now(),
    )
