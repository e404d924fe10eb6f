from __future__ import annotations

import asyncio
import json as _json

from fastapi import APIRouter, HTTPException
from loguru import logger
from sse_starlette.sse import EventSourceResponse

from agentflow.agents.contents import build_session
from agentflow.agents.orchestrator import AgentOrchestrator
from agentflow.api.deps import resolve_base_model
from agentflow.config import AgentConfig, settings
from agentflow.llm_client import client
from agentflow.models.schemas import GenerationRequest
from agentflow.models.session import Session
from agentflow.services import logger as log_service
from agentflow.services import streaming
from agentflow.services.transport import QueueEventSink, publish

router = APIRouter(prefix="/api", tags=["generation"])


def _error_status(err: Exception) -> int:
    """HTTP-ish status carried by an upstream error, 500 otherwise."""
    for attr in ("code", "status_code", "status"):
        value = getattr(err, attr, None)
        if isinstance(value, int) and 400 <= value < 600:
            return value
    return 500


async def run_session(session: Session, sink: QueueEventSink, agent_config: AgentConfig) -> None:
    """Run one orchestrator session, turning failures into an error event."""
    try:
        orchestrator = AgentOrchestrator(
            session,
            upstream=client(),
            sink=sink,
            config=agent_config,
        )
        await orchestrator.run()
    except asyncio.CancelledError:
        log_service.log_event(
            event_type="generation_cancelled",
            message="Client disconnected, session cancelled",
            chat_id=session.chat_id,
            request_id=session.request_id,
        )
        raise
    except Exception as e:
        logger.exception(f"[agent-runner] session {session.session_key} failed: {e}")
        log_service.log_event(
            event_type="generation_error",
            message="Agent session failed",
            error=str(e),
            chat_id=session.chat_id,
            request_id=session.request_id,
        )
        publish(
            sink,
            streaming.error(
                str(e) or e.__class__.__name__,
                status=_error_status(e),
                chat_id=session.chat_id,
                request_id=session.request_id,
            ),
        )


@router.post("/generate")
async def generate(request: GenerationRequest):
    """Run the agent workflow and stream its events over SSE."""
    base_model = resolve_base_model(request.model)
    if base_model is None:
        raise HTTPException(status_code=400, detail=f"Unknown agent model: {request.model}")
    if not request.contents:
        raise HTTPException(status_code=400, detail="contents must not be empty")

    agent_config = AgentConfig.from_settings(
        settings,
        include_thoughts=request.config.options.includeThoughts,
    )
    try:
        session = build_session(
            contents=request.contents,
            base_model=base_model,
            agent_config=agent_config,
            chat_id=request.chatId,
            request_id=request.requestId,
            finalize_model=request.config.model,
            default_instruction=settings.resolve_system_instruction(),
            user_instruction=request.config.systemInstruction,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    log_service.log_event(
        event_type="generation_started",
        message="Agent session started",
        chat_id=request.chatId,
        request_id=request.requestId,
        model=request.model,
        base_model=base_model,
    )

    async def event_generator():
        sink = QueueEventSink()
        task = asyncio.create_task(run_session(session, sink, agent_config))
        try:
            async for event, payload in sink.events():
                yield {
                    "event": event,
                    "data": _json.dumps(payload),
                }
        finally:
            # Client went away before the session finished
            if not task.done():
                task.cancel()

    return EventSourceResponse(event_generator())

