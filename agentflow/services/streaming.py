from __future__ import annotations

from typing import Any

from agentflow.models.events import EventType, SSEEvent
from agentflow.models.stream import ShapedPart

PROVIDER = "gemini"


def chunk(
    chat_id: str | None,
    request_id: str | None,
    step: str,
    parts: list[ShapedPart],
) -> SSEEvent:
    """Incremental output of one phase."""
    return SSEEvent(
        event=EventType.CHUNK,
        data={
            "chatId": chat_id,
            "requestId": request_id,
            "step": step,
            "parts": [p.to_dict() for p in parts],
            "provider": PROVIDER,
        },
    )


def citations(
    chat_id: str | None,
    request_id: str | None,
    grounding: dict[str, Any] | None,
    url_contexts: list[dict[str, Any]] | None = None,
) -> SSEEvent:
    """Closing chunk that carries only citation metadata."""
    data: dict[str, Any] = {
        "chatId": chat_id,
        "requestId": request_id,
        "step": "final",
        "parts": [],
        "provider": PROVIDER,
    }
    if grounding:
        data["grounding"] = grounding
    if url_contexts:
        data["urlContextMetadata"] = {"urlContexts": url_contexts}
    return SSEEvent(event=EventType.CHUNK, data=data)


def end_generation(chat_id: str | None, request_id: str | None, ok: bool = True) -> SSEEvent:
    return SSEEvent(
        event=EventType.END_GENERATION,
        data={"ok": ok, "chatId": chat_id, "requestId": request_id},
    )


def error(
    message: str,
    *,
    status: int = 500,
    chat_id: str | None = None,
    request_id: str | None = None,
) -> SSEEvent:
    return SSEEvent(
        event=EventType.ERROR,
        data={
            "error": message,
            "message": message,
            "status": status,
            "chatId": chat_id,
            "requestId": request_id,
        },
    )
