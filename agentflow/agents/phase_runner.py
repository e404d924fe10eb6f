from __future__ import annotations

import time
from typing import Any, AsyncIterator, Protocol

from loguru import logger

from agentflow.agents.block_extractor import extract_block, extract_blocks
from agentflow.agents.chunk_shaper import ShaperState, shape_parts
from agentflow.agents.grounding import GroundingAccumulator
from agentflow.models.session import PhaseRequest, PhaseResult
from agentflow.models.stream import FunctionCall, StreamChunk, TokenUsage
from agentflow.services import logger as log_service
from agentflow.services import streaming
from agentflow.services.transport import EventSink, publish

# Finish reasons that mean the model stopped on its own
CLEAN_FINISH_REASONS = frozenset({"STOP", "FINISH_REASON_UNSPECIFIED"})


class UpstreamChat(Protocol):
    model: str

    def send_message_stream(
        self,
        message: str,
        *,
        tools: tuple[str, ...] = (),
        include_thoughts: bool | None = None,
    ) -> AsyncIterator[StreamChunk]: ...

    def get_history(self) -> list[Any]: ...


class PhaseRunner:
    """Runs exactly one phase: one streamed call, consumed chunk by chunk.

    Shaped parts go to the sink as they arrive and citation metadata goes to
    the session's grounding accumulator. All text is collected for block
    extraction, with the answer text also kept on its own. Upstream errors
    propagate unchanged.
    """

    def __init__(
        self,
        *,
        sink: EventSink | None,
        grounding: GroundingAccumulator,
        shaper_state: ShaperState,
        chat_id: str | None = None,
        request_id: str | None = None,
        debug: bool = False,
    ):
        self.sink = sink
        self.grounding = grounding
        self.shaper_state = shaper_state
        self.chat_id = chat_id
        self.request_id = request_id
        self.debug = debug

    async def run(self, chat: UpstreamChat, request: PhaseRequest) -> PhaseResult:
        step = request.phase.value
        result = PhaseResult(phase=request.phase)
        function_calls: list[FunctionCall] = []
        text_parts: list[str] = []
        answer_parts: list[str] = []
        usage: TokenUsage | None = None

        t0 = time.monotonic()
        async for chunk in chat.send_message_stream(
            request.prompt,
            tools=request.tools,
            include_thoughts=request.include_thoughts,
        ):
            result.chunk_count += 1

            batch = shape_parts(
                chunk.parts,
                step,
                self.shaper_state,
                force_thoughts=request.force_thoughts,
                force_answer=request.force_answer,
                debug=self.debug,
            )
            if batch:
                result.has_answer = result.has_answer or batch.has_non_thought
                publish(self.sink, streaming.chunk(self.chat_id, self.request_id, step, batch.parts))

            self.grounding.update_from_metadata(chunk.citations)

            for part in chunk.parts:
                if not part.text:
                    continue
                text_parts.append(part.text)
                if not part.thought:
                    answer_parts.append(part.text)
            function_calls.extend(chunk.function_calls)

            if chunk.finish_reason:
                result.finish_reason = chunk.finish_reason
            if chunk.usage is not None:
                usage = chunk.usage
        elapsed_ms = int((time.monotonic() - t0) * 1000)

        self.grounding.update_from_calls(function_calls)

        result.function_calls = function_calls
        result.collected_text = "".join(text_parts)
        result.answer_text = "".join(answer_parts)
        result.blocks = self._extract(result, request.block_names)
        result.usage = usage

        self._log_completion(chat, request, result, elapsed_ms)
        return result

    @staticmethod
    def _extract(result: PhaseResult, block_names: tuple[str, ...]) -> dict[str, str | None]:
        # Answer text first; reasoning may quote the tags. A phase cut off while
        # still thinking only has its block in the full text.
        blocks = extract_blocks(result.answer_text, block_names)
        for tag, body in blocks.items():
            if body is None:
                blocks[tag] = extract_block(result.collected_text, tag)
        return blocks

    def _log_completion(
        self,
        chat: UpstreamChat,
        request: PhaseRequest,
        result: PhaseResult,
        elapsed_ms: int,
    ) -> None:
        label = request.phase.value.upper()
        if request.cycle:
            label = f"{label}#{request.cycle}"

        usage = result.usage or TokenUsage()
        logger.info(
            f"[agent-runner] {label} tokens: prompt={usage.prompt_tokens}, "
            f"tool={usage.tool_prompt_tokens}, output={usage.output_tokens}, "
            f"thoughts={usage.thought_tokens}, total={usage.total_tokens}"
        )
        log_service.log_llm_call(
            model=getattr(chat, "model", "unknown"),
            caller=f"agent.{request.phase.value}",
            input_tokens=usage.prompt_tokens + usage.tool_prompt_tokens,
            output_tokens=usage.output_tokens,
            thought_tokens=usage.thought_tokens,
            duration_ms=elapsed_ms,
        )

        if result.finish_reason and result.finish_reason not in CLEAN_FINISH_REASONS:
            logger.warning(f"[agent-runner] {label} stopped early: finish_reason={result.finish_reason}")
        missing = [tag for tag, body in result.blocks.items() if body is None]
        if missing:
            logger.warning(f"[agent-runner] {label} produced no block for {missing}")
        if self.debug:
            logger.debug(
                f"[agent-runner] {label} chunks={result.chunk_count} "
                f"calls={[c.name for c in result.function_calls]} has_answer={result.has_answer}"
            )
