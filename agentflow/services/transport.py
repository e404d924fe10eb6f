"""Publish-only channels the orchestrator pushes events into."""
from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Protocol

from agentflow.models.events import TERMINAL_EVENTS, SSEEvent


class EventSink(Protocol):
    def emit(self, event: str, payload: dict[str, Any]) -> None: ...


def publish(sink: EventSink | None, event: SSEEvent) -> None:
    if sink is None:
        return
    sink.emit(event.event.value, event.data)


class QueueEventSink:
    """Buffers events for a consumer running in another task (the SSE response)."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue()
        self.closed = False

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        if self.closed:
            return
        self._queue.put_nowait((event, payload))
        if event in TERMINAL_EVENTS:
            self.closed = True

    async def events(self) -> AsyncIterator[tuple[str, dict[str, Any]]]:
        """Yield events in arrival order until a terminal event went through."""
        while True:
            event, payload = await self._queue.get()
            yield event, payload
            if event in TERMINAL_EVENTS:
                return


class RecordingSink:
    """Keeps every emitted event in memory."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))

    def named(self, event: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]
