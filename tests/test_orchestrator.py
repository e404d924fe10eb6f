"""Tests for the agent session orchestrator."""
import asyncio
from datetime import date

import pytest

from agentflow.agents.block_extractor import UNSTRUCTURED_MARKER
from agentflow.agents.orchestrator import (
    AgentConfigurationError,
    AgentOrchestrator,
    LoopGuard,
    SessionCancelled,
)
from agentflow.config import AgentConfig
from agentflow.models.session import ControlDecision, Session
from fakes import FakeUpstream, cited, decision, text


def _session(max_cycles=5, **overrides):
    values = dict(
        chat_id="chat-1",
        request_id="req-1",
        user_content={"role": "user", "parts": [{"text": "What changed in https://example.com/release?"}]},
        history=[{"role": "user", "parts": [{"text": "hi"}]}, {"role": "model", "parts": [{"text": "hello"}]}],
        base_model="gemini-base",
        finalize_model="gemini-final",
        max_cycles=max_cycles,
    )
    values.update(overrides)
    return Session(**values)


def _orchestrator(upstream, sink, max_cycles=5, config=None, **kwargs):
    return AgentOrchestrator(
        _session(max_cycles=max_cycles),
        upstream=upstream,
        sink=sink,
        config=config or AgentConfig(max_cycles=max_cycles),
        today=date(2026, 3, 1),
        **kwargs,
    )


def _always_research(n):
    return [decision("research", f"need more {n}")]


class TestPhaseSequence:
    @pytest.mark.asyncio
    async def test_default_flow_runs_each_phase_once(self, upstream, sink):
        report = await _orchestrator(upstream, sink).run()

        assert upstream.steps() == ["clarify", "plan", "research", "control", "final"]
        assert report.phases == upstream.steps()
        assert report.cycles == 1
        assert [n.tag for n in report.notes] == [
            "CLARIFY_NOTES",
            "RESEARCH_PLAN",
            "RESEARCH_NOTES",
            "CONTROL_NOTES",
        ]

    @pytest.mark.asyncio
    async def test_research_continues_until_control_says_final(self, sink):
        upstream = FakeUpstream({"control": lambda n: [decision("research" if n < 2 else "final")]})

        report = await _orchestrator(upstream, sink).run()

        assert upstream.steps().count("research") == 2
        assert upstream.steps().count("control") == 2
        assert [d.action for d in report.decisions] == ["research", "final"]

    @pytest.mark.asyncio
    async def test_fourth_consecutive_research_is_forced_final(self, sink):
        upstream = FakeUpstream({"control": _always_research})

        report = await _orchestrator(upstream, sink, max_cycles=10).run()

        steps = upstream.steps()
        assert steps.count("control") == 4
        assert steps.count("research") == 4
        assert steps.count("final") == 1
        assert [d.action for d in report.decisions] == ["research"] * 4

    @pytest.mark.asyncio
    async def test_max_cycles_one_terminates(self, sink):
        upstream = FakeUpstream({"control": _always_research})

        await _orchestrator(upstream, sink, max_cycles=1).run()

        assert upstream.steps() == ["clarify", "plan", "research", "control", "final"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_cycles", [1, 2, 3, 5])
    async def test_control_count_never_exceeds_max_cycles(self, sink, max_cycles):
        upstream = FakeUpstream({"control": _always_research})

        await _orchestrator(upstream, sink, max_cycles=max_cycles).run()

        steps = upstream.steps()
        assert steps.count("control") <= max_cycles
        assert steps.count("research") >= 1
        assert steps.count("clarify") == steps.count("plan") == steps.count("final") == 1

    @pytest.mark.asyncio
    async def test_missing_decision_call_means_final(self, sink):
        upstream = FakeUpstream({"control": lambda n: [text("I think we are done")]})

        report = await _orchestrator(upstream, sink).run()

        assert report.decisions == [ControlDecision(action="final", source="default")]
        assert upstream.steps().count("research") == 1

    @pytest.mark.asyncio
    async def test_string_encoded_decision(self, sink):
        upstream = FakeUpstream({"control": lambda n: [decision("final", "done", as_string=True)]})

        report = await _orchestrator(upstream, sink).run()

        assert report.decisions == [ControlDecision(action="final", notes="done")]
        control_note = report.notes[-1]
        assert control_note.tag == "CONTROL_NOTES"
        assert control_note.body == "Decision: final\ndone"


class TestContext:
    @pytest.mark.asyncio
    async def test_later_phases_see_earlier_notes(self, sink):
        upstream = FakeUpstream({"control": lambda n: [decision("research" if n == 1 else "final", "gap")]})

        await _orchestrator(upstream, sink).run()

        plan_prompt = upstream.messages("plan")[0]
        assert "<CLARIFY_NOTES>\nterms\n</CLARIFY_NOTES>" in plan_prompt
        second_research = upstream.messages("research")[1]
        assert "<RESEARCH_NOTES>\nfacts 1\n</RESEARCH_NOTES>" in second_research
        assert "<CONTROL_NOTES>\nDecision: research\ngap\n</CONTROL_NOTES>" in second_research
        assert "research cycle 2 of at most 5" in second_research

    @pytest.mark.asyncio
    async def test_final_prompt_excludes_control_notes(self, upstream, sink):
        await _orchestrator(upstream, sink).run()

        final_prompt = upstream.messages("final")[0]
        assert final_prompt.startswith("STEP=FINAL")
        assert "<RESEARCH_NOTES>" in final_prompt
        assert "<RESEARCH_PLAN>" in final_prompt
        assert "CONTROL_NOTES" not in final_prompt
        assert "https://example.com/release" in final_prompt
        assert "Today's date: 2026-03-01" in final_prompt

    @pytest.mark.asyncio
    async def test_clarify_prompt_carries_user_request(self, upstream, sink):
        await _orchestrator(upstream, sink).run()

        clarify_prompt = upstream.messages("clarify")[0]
        assert "What changed in https://example.com/release?" in clarify_prompt
        assert "MANDATORY" in clarify_prompt

    @pytest.mark.asyncio
    async def test_missing_block_falls_back_to_marked_raw_text(self, sink):
        upstream = FakeUpstream({"plan": lambda n: [text("just prose, no tags")]})

        report = await _orchestrator(upstream, sink).run()

        plan_note = report.notes[1]
        assert plan_note.tag == "RESEARCH_PLAN"
        assert plan_note.body.startswith(UNSTRUCTURED_MARKER)
        assert "just prose, no tags" in plan_note.body

    @pytest.mark.asyncio
    async def test_plan_cut_off_while_thinking_keeps_its_output(self, sink):
        upstream = FakeUpstream(
            {"plan": lambda n: [text("<RESEARCH_PLAN>partial plan", thought=True, finish_reason="MAX_TOKENS")]}
        )

        report = await _orchestrator(upstream, sink).run()

        assert report.notes[1].tag == "RESEARCH_PLAN"
        assert report.notes[1].body == "partial plan"
        assert "<RESEARCH_PLAN>\npartial plan\n</RESEARCH_PLAN>" in upstream.messages("research")[0]

    @pytest.mark.asyncio
    async def test_untagged_reasoning_survives_in_fallback_note(self, sink):
        upstream = FakeUpstream({"clarify": lambda n: [text("weighing two meanings", thought=True)]})

        report = await _orchestrator(upstream, sink).run()

        clarify_note = report.notes[0]
        assert clarify_note.body.startswith(UNSTRUCTURED_MARKER)
        assert "weighing two meanings" in clarify_note.body
        assert "(no output)" not in clarify_note.body

    @pytest.mark.asyncio
    async def test_grounding_summary_is_opt_in(self, sink):
        script = {"clarify": lambda n: [cited(sources=[("https://a.example", "A")]), text("<CLARIFY_NOTES>x</CLARIFY_NOTES>")]}
        upstream = FakeUpstream(script)
        await _orchestrator(upstream, sink).run()
        assert "Sources consulted so far" not in upstream.messages("plan")[0]

        upstream = FakeUpstream(script)
        config = AgentConfig(max_cycles=5, include_grounding_summary=True)
        await _orchestrator(upstream, sink, config=config).run()
        assert "- A (https://a.example)" in upstream.messages("plan")[0]

    @pytest.mark.asyncio
    async def test_note_filter_hook_prunes_context(self, upstream, sink):
        def drop_clarify(notes):
            return [n for n in notes if n.tag != "CLARIFY_NOTES"]

        report = await _orchestrator(upstream, sink, note_filter=drop_clarify).run()

        assert "CLARIFY_NOTES" not in upstream.messages("plan")[0]
        # The log itself keeps every note
        assert report.notes[0].tag == "CLARIFY_NOTES"


class TestConversations:
    @pytest.mark.asyncio
    async def test_final_runs_in_new_chat_without_control_turns(self, sink):
        upstream = FakeUpstream({"control": lambda n: [decision("research" if n == 1 else "final")]})

        await _orchestrator(upstream, sink).run()

        agent_chat, final_chat = upstream.chats
        assert agent_chat.model == "gemini-base"
        assert final_chat.model == "gemini-final"
        assert "FINAL ANSWER RULES" in final_chat.system_instruction
        assert "AGENT WORKFLOW" in agent_chat.system_instruction

        seeded_steps = [entry.get("step") for entry in final_chat.initial_history]
        assert "control" not in seeded_steps
        assert seeded_steps.count("research") == 4  # user + model turn per cycle
        # Prior conversation comes first
        assert final_chat.initial_history[0] == {"role": "user", "parts": [{"text": "hi"}]}

    @pytest.mark.asyncio
    async def test_tool_table_per_phase(self, upstream, sink):
        await _orchestrator(upstream, sink).run()

        tools = {c.step: c.tools for c in upstream.calls}
        assert tools["clarify"] == ("google_search", "url_context")
        assert tools["research"] == ("google_search", "url_context")
        assert tools["control"] == ("take_next_step",)
        assert tools["final"] == ()

    @pytest.mark.asyncio
    async def test_instructions_are_layered(self, sink, upstream):
        session = _session(default_instruction="Be brief.", user_instruction="Answer in French.")
        orchestrator = AgentOrchestrator(
            session, upstream=upstream, sink=sink, config=AgentConfig(), today=date(2026, 3, 1)
        )

        await orchestrator.run()

        instruction = upstream.chats[0].system_instruction
        assert instruction.index("Be brief.") < instruction.index("Answer in French.")


class TestEvents:
    @pytest.mark.asyncio
    async def test_only_final_output_is_answer_text(self, upstream, sink):
        await _orchestrator(upstream, sink).run()

        for payload in sink.named("chunk"):
            for part in payload["parts"]:
                assert part["thought"] is (payload["step"] != "final")
        final_parts = [p for e in sink.named("chunk") if e["step"] == "final" for p in e["parts"]]
        assert final_parts == [{"text": "\n\nThe answer.", "thought": False}]

    @pytest.mark.asyncio
    async def test_end_generation_is_last_and_citations_precede_it(self, sink):
        upstream = FakeUpstream(
            {
                "research": lambda n: [
                    cited(queries=["release notes"], sources=[("https://a.example", "A")]),
                    text("<RESEARCH_NOTES>ok</RESEARCH_NOTES>"),
                ]
            }
        )

        await _orchestrator(upstream, sink).run()

        names = [name for name, _ in sink.events]
        assert names[-1] == "end_generation"
        assert sink.events[-1][1] == {"ok": True, "chatId": "chat-1", "requestId": "req-1"}
        citation = sink.events[-2][1]
        assert citation["parts"] == []
        assert citation["step"] == "final"
        assert citation["grounding"] == {
            "sources": [{"uri": "https://a.example", "title": "A"}],
            "queries": ["release notes"],
        }
        assert citation["urlContextMetadata"] == {"urlContexts": [{"uri": "https://a.example", "title": "A"}]}

    @pytest.mark.asyncio
    async def test_url_contexts_alone_still_produce_citation_chunk(self, sink):
        upstream = FakeUpstream(
            {
                "research": lambda n: [
                    cited(url_contexts=[("https://example.com/release", "URL_RETRIEVAL_STATUS_SUCCESS")]),
                    text("<RESEARCH_NOTES>ok</RESEARCH_NOTES>"),
                ]
            }
        )

        await _orchestrator(upstream, sink).run()

        citation = sink.events[-2][1]
        assert sink.events[-1][0] == "end_generation"
        assert citation["parts"] == []
        assert "grounding" not in citation
        assert citation["urlContextMetadata"] == {
            "urlContexts": [{"uri": "https://example.com/release", "status": "URL_RETRIEVAL_STATUS_SUCCESS"}]
        }

    @pytest.mark.asyncio
    async def test_no_citation_chunk_without_grounding(self, upstream, sink):
        await _orchestrator(upstream, sink).run()

        assert all(payload["parts"] for payload in sink.named("chunk"))
        assert len(sink.named("end_generation")) == 1

    @pytest.mark.asyncio
    async def test_phase_transitions_are_separated(self, upstream, sink):
        await _orchestrator(upstream, sink).run()

        first_by_step = {}
        for payload in sink.named("chunk"):
            first_by_step.setdefault(payload["step"], payload["parts"][0]["text"])
        assert first_by_step["clarify"] == "checking terms"
        assert first_by_step["plan"].startswith("\n\n")
        assert first_by_step["final"].startswith("\n\n")

    @pytest.mark.asyncio
    async def test_concurrent_sessions_do_not_share_shaper_state(self):
        from agentflow.services.transport import RecordingSink

        sinks = [RecordingSink(), RecordingSink()]
        runs = [_orchestrator(FakeUpstream(), s).run() for s in sinks]

        await asyncio.gather(*runs)

        for s in sinks:
            assert s.named("chunk")[0]["parts"][0]["text"] == "checking terms"


class TestFailures:
    @pytest.mark.asyncio
    async def test_upstream_error_propagates_without_end_event(self, sink):
        def boom(n):
            raise RuntimeError("upstream 503")

        upstream = FakeUpstream({"research": boom})

        with pytest.raises(RuntimeError, match="upstream 503"):
            await _orchestrator(upstream, sink).run()

        assert sink.named("end_generation") == []
        assert "final" not in upstream.steps()

    @pytest.mark.asyncio
    async def test_cancel_event_stops_between_phases(self, sink):
        cancel = asyncio.Event()

        def plan_then_cancel(n):
            cancel.set()
            return [text("<RESEARCH_PLAN>p</RESEARCH_PLAN>")]

        upstream = FakeUpstream({"plan": plan_then_cancel})

        with pytest.raises(SessionCancelled):
            await _orchestrator(upstream, sink, cancel_event=cancel).run()

        assert upstream.steps() == ["clarify", "plan"]

    @pytest.mark.asyncio
    async def test_missing_base_model(self, upstream, sink):
        orchestrator = AgentOrchestrator(
            _session(base_model=""), upstream=upstream, sink=sink, config=AgentConfig()
        )
        with pytest.raises(AgentConfigurationError):
            await orchestrator.run()
        assert upstream.chats == []

    @pytest.mark.asyncio
    async def test_runs_without_sink(self, upstream):
        report = await _orchestrator(upstream, None).run()
        assert report.phases[-1] == "final"


class TestLoopGuard:
    def test_streak_limit(self):
        guard = LoopGuard(max_cycles=10)
        research = ControlDecision(action="research")
        actions = [guard.next_action(research, cycle)[0] for cycle in range(1, 5)]
        assert actions == ["research", "research", "research", "final"]

    def test_final_resets_streak(self):
        guard = LoopGuard(max_cycles=10)
        research = ControlDecision(action="research")
        guard.next_action(research, 1)
        guard.next_action(research, 2)
        guard.next_action(ControlDecision(action="final"), 3)
        assert guard.streak == 0

    def test_max_cycles_stops_research(self):
        guard = LoopGuard(max_cycles=2)
        research = ControlDecision(action="research")
        assert guard.next_action(research, 1) == ("research", "call")
        assert guard.next_action(research, 2) == ("final", "max_cycles")

    def test_max_cycles_is_clamped(self):
        assert LoopGuard(max_cycles=0).max_cycles == 1
