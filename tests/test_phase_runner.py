"""Tests for single-phase execution."""
import pytest

from agentflow.agents.chunk_shaper import ShaperState
from agentflow.agents.grounding import GroundingAccumulator
from agentflow.agents.phase_runner import PhaseRunner
from agentflow.models.session import Phase, PhaseRequest
from agentflow.models.stream import ContentPart, StreamChunk, TokenUsage
from fakes import FakeUpstream, call, cited, text


def _runner(sink, grounding=None):
    return PhaseRunner(
        sink=sink,
        grounding=grounding or GroundingAccumulator(),
        shaper_state=ShaperState(),
        chat_id="chat-1",
        request_id="req-1",
    )


def _chat(script):
    upstream = FakeUpstream(script)
    return upstream, upstream.create_chat(model="gemini-test", system_instruction="sys")


class TestPhaseRunner:
    @pytest.mark.asyncio
    async def test_streams_shaped_chunks_and_extracts_block(self, sink):
        _, chat = _chat(
            {
                "research": lambda n: [
                    text("looking", thought=True),
                    text("<RESEARCH_NOTES>found "),
                    text("it</RESEARCH_NOTES>", finish_reason="STOP"),
                ]
            }
        )
        request = PhaseRequest(
            phase=Phase.RESEARCH,
            prompt="STEP=RESEARCH\ngo",
            tools=("google_search", "url_context"),
            block_names=("RESEARCH_NOTES",),
            cycle=1,
        )

        result = await _runner(sink).run(chat, request)

        chunks = sink.named("chunk")
        assert len(chunks) == 3
        assert chunks[0] == {
            "chatId": "chat-1",
            "requestId": "req-1",
            "step": "research",
            "parts": [{"text": "looking", "thought": True}],
            "provider": "gemini",
        }
        assert chunks[1]["parts"] == [{"text": "\n<RESEARCH_NOTES>found ", "thought": False}]
        assert result.blocks == {"RESEARCH_NOTES": "found it"}
        assert result.has_answer is True
        assert result.finish_reason == "STOP"
        assert result.chunk_count == 3

    @pytest.mark.asyncio
    async def test_answer_text_is_kept_apart_from_thoughts(self, sink):
        _, chat = _chat({"plan": lambda n: [text("draft ", thought=True), text("answer")]})
        request = PhaseRequest(phase=Phase.PLAN, prompt="STEP=PLAN", force_thoughts=True)

        result = await _runner(sink).run(chat, request)

        assert result.collected_text == "draft answer"
        assert result.answer_text == "answer"
        # Forced thoughts are still streamed, but never count as an answer
        assert result.has_answer is False

    @pytest.mark.asyncio
    async def test_collects_calls_and_grounding(self, sink):
        grounding = GroundingAccumulator()
        _, chat = _chat(
            {
                "control": lambda n: [
                    cited(queries=["q"], sources=[("https://a.example", "A")]),
                    call("google_search", {"query": "second"}),
                    call("take_next_step", {"action": "final"}),
                ]
            }
        )
        request = PhaseRequest(phase=Phase.CONTROL, prompt="STEP=CONTROL", tools=("take_next_step",))

        result = await _runner(sink, grounding).run(chat, request)

        assert [c.name for c in result.function_calls] == ["google_search", "take_next_step"]
        assert grounding.queries == ["q", "second"]
        assert grounding.sources == {"https://a.example": "A"}
        # Nothing with text, nothing streamed
        assert sink.named("chunk") == []

    @pytest.mark.asyncio
    async def test_missing_block_is_none(self, sink):
        _, chat = _chat({"clarify": lambda n: [text("no tags at all")]})
        request = PhaseRequest(phase=Phase.CLARIFY, prompt="STEP=CLARIFY", block_names=("CLARIFY_NOTES",))

        result = await _runner(sink).run(chat, request)

        assert result.blocks == {"CLARIFY_NOTES": None}
        assert result.collected_text == "no tags at all"

    @pytest.mark.asyncio
    async def test_keeps_last_usage(self, sink):
        _, chat = _chat(
            {
                "final": lambda n: [
                    StreamChunk(parts=[ContentPart(text="a")], usage=TokenUsage(prompt_tokens=1, total_tokens=1)),
                    StreamChunk(parts=[ContentPart(text="b")], usage=TokenUsage(prompt_tokens=10, total_tokens=15)),
                ]
            }
        )
        result = await _runner(sink).run(chat, PhaseRequest(phase=Phase.FINAL, prompt="STEP=FINAL"))

        assert result.usage.total_tokens == 15

    @pytest.mark.asyncio
    async def test_upstream_error_propagates(self, sink):
        def boom(n):
            raise ConnectionError("stream dropped")

        _, chat = _chat({"research": boom})
        with pytest.raises(ConnectionError, match="stream dropped"):
            await _runner(sink).run(chat, PhaseRequest(phase=Phase.RESEARCH, prompt="STEP=RESEARCH"))

    @pytest.mark.asyncio
    async def test_passes_tools_to_chat(self, sink):
        upstream, chat = _chat({})
        request = PhaseRequest(phase=Phase.CONTROL, prompt="STEP=CONTROL", tools=("take_next_step",))

        await _runner(sink).run(chat, request)

        assert upstream.calls[0].tools == ("take_next_step",)

    @pytest.mark.asyncio
    async def test_block_in_answer_text_wins_over_quoted_tags(self, sink):
        _, chat = _chat(
            {
                "research": lambda n: [
                    text("I will write <RESEARCH_NOTES>sketch</RESEARCH_NOTES>", thought=True),
                    text("<RESEARCH_NOTES>real</RESEARCH_NOTES>"),
                ]
            }
        )
        request = PhaseRequest(phase=Phase.RESEARCH, prompt="STEP=RESEARCH", block_names=("RESEARCH_NOTES",))

        result = await _runner(sink).run(chat, request)

        assert result.blocks == {"RESEARCH_NOTES": "real"}

    @pytest.mark.asyncio
    async def test_truncated_thought_only_phase_keeps_partial_block(self, sink):
        _, chat = _chat(
            {"plan": lambda n: [text("<RESEARCH_PLAN>partial plan", thought=True, finish_reason="MAX_TOKENS")]}
        )
        request = PhaseRequest(phase=Phase.PLAN, prompt="STEP=PLAN", block_names=("RESEARCH_PLAN",))

        result = await _runner(sink).run(chat, request)

        assert result.finish_reason == "MAX_TOKENS"
        assert result.answer_text == ""
        assert result.collected_text == "<RESEARCH_PLAN>partial plan"
        assert result.blocks == {"RESEARCH_PLAN": "partial plan"}
