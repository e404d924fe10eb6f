from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Protocol

from loguru import logger

from agentflow.agents.block_extractor import fallback_body
from agentflow.agents.chunk_shaper import ShaperState
from agentflow.agents.contents import content_text, extract_urls
from agentflow.agents.grounding import GroundingAccumulator
from agentflow.agents.phase_runner import PhaseRunner, UpstreamChat
from agentflow.agents.tool_calls import parse_control_decision
from agentflow.agents.tools import tools_for
from agentflow.config import AgentConfig
from agentflow.models.session import (
    ControlAction,
    ControlDecision,
    Phase,
    PhaseNote,
    PhaseRequest,
    PhaseResult,
    Session,
)
from agentflow.models.stream import TokenUsage
from agentflow.services import logger as log_service
from agentflow.services import streaming
from agentflow.services.prompt_store import render_prompt
from agentflow.services.transport import EventSink, publish

MAX_CONSECUTIVE_RESEARCH = 3

NOTE_TAGS: dict[Phase, str] = {
    Phase.CLARIFY: "CLARIFY_NOTES",
    Phase.PLAN: "RESEARCH_PLAN",
    Phase.RESEARCH: "RESEARCH_NOTES",
    Phase.CONTROL: "CONTROL_NOTES",
}

NoteFilter = Callable[[list[PhaseNote]], list[PhaseNote]]


class AgentConfigurationError(Exception):
    """The session cannot start with the given configuration."""


class SessionCancelled(Exception):
    """The caller asked the session to stop between phases."""


class Upstream(Protocol):
    def create_chat(
        self,
        *,
        model: str,
        system_instruction: str,
        history: list[Any] | None = None,
        include_thoughts: bool = True,
        top_p: float | None = None,
    ) -> UpstreamChat: ...


class LoopGuard:
    """Termination rules of the research/control loop.

    A run of ``research`` decisions is capped at ``streak_limit``; the decision
    after that is forced to ``final``. Independently, no further research cycle
    starts once ``max_cycles`` cycles have run.
    """

    def __init__(self, max_cycles: int, streak_limit: int = MAX_CONSECUTIVE_RESEARCH):
        self.max_cycles = max(int(max_cycles), 1)
        self.streak_limit = streak_limit
        self.streak = 0

    def next_action(self, decision: ControlDecision, cycle: int) -> tuple[ControlAction, str]:
        if decision.action != "research":
            self.streak = 0
            return "final", decision.source
        if self.streak >= self.streak_limit:
            self.streak = 0
            return "final", "streak_limit"
        self.streak += 1
        if cycle >= self.max_cycles:
            return "final", "max_cycles"
        return "research", decision.source


@dataclass
class SessionReport:
    phases: list[str] = field(default_factory=list)
    cycles: int = 0
    decisions: list[ControlDecision] = field(default_factory=list)
    notes: list[PhaseNote] = field(default_factory=list)
    usage: dict[str, TokenUsage] = field(default_factory=dict)

    def total_usage(self) -> TokenUsage:
        total = TokenUsage()
        for usage in self.usage.values():
            total.add(usage)
        return total


class AgentOrchestrator:
    """Runs one agent session end to end.

    Flow:
      1. CLARIFY and PLAN, once each
      2. RESEARCH, then CONTROL decides: another RESEARCH cycle or stop
      3. FINAL in a fresh conversation, the only user-visible answer
      4. Citation chunk (if any grounding was collected) and end_generation

    Phase notes are appended in order and fed to every later phase. Upstream
    errors propagate to the caller; malformed phase output never aborts.
    """

    def __init__(
        self,
        session: Session,
        *,
        upstream: Upstream,
        sink: EventSink | None,
        config: AgentConfig,
        cancel_event: asyncio.Event | None = None,
        note_filter: NoteFilter | None = None,
        today: date | None = None,
    ):
        self.session = session
        self.upstream = upstream
        self.sink = sink
        self.config = config
        self.cancel_event = cancel_event
        self.note_filter = note_filter
        self.today = (today or date.today()).isoformat()

        self.notes: list[PhaseNote] = []
        self.grounding = GroundingAccumulator()
        self.shaper_state = ShaperState()
        self.report = SessionReport()
        self.runner = PhaseRunner(
            sink=sink,
            grounding=self.grounding,
            shaper_state=self.shaper_state,
            chat_id=session.chat_id,
            request_id=session.request_id,
            debug=config.debug,
        )
        # History index ranges of CONTROL turns, hidden from the final conversation
        self._control_turns: list[tuple[int, int]] = []

    # --- Public API ---

    async def run(self) -> SessionReport:
        session = self.session
        if not session.base_model:
            raise AgentConfigurationError("Agent base model is not configured (set AGENT_BASE_MODEL)")
        log_service.log_phase(
            session.session_key,
            "session",
            "started",
            {"base_model": session.base_model, "finalize_model": session.finalize_model},
        )

        agent_chat = self.upstream.create_chat(
            model=session.base_model,
            system_instruction=self._system_instruction("agent"),
            history=session.history,
            include_thoughts=self.config.include_thoughts,
            top_p=self.config.top_p,
        )

        await self._run_note_phase(agent_chat, Phase.CLARIFY)
        await self._run_note_phase(agent_chat, Phase.PLAN)

        guard = LoopGuard(session.max_cycles)
        cycle = 1
        while True:
            await self._run_note_phase(agent_chat, Phase.RESEARCH, cycle)
            self.report.cycles = cycle
            decision = await self._run_control(agent_chat, cycle)
            action, reason = guard.next_action(decision, cycle)
            if action == "final":
                if reason in ("streak_limit", "max_cycles"):
                    logger.warning(
                        f"[agent-runner] CONTROL asked for research at cycle {cycle}; forcing final ({reason})"
                    )
                break
            cycle += 1

        await self._run_final(agent_chat)

        if self.grounding.has_citations():
            publish(
                self.sink,
                streaming.citations(
                    session.chat_id,
                    session.request_id,
                    self.grounding.snapshot(),
                    self.grounding.url_context_snapshot(),
                ),
            )
        publish(self.sink, streaming.end_generation(session.chat_id, session.request_id))

        if self.config.debug:
            self._log_usage_summary()
        log_service.log_phase(
            session.session_key,
            "session",
            "completed",
            {"phases": self.report.phases, "cycles": self.report.cycles},
        )
        return self.report

    # --- Phases ---

    async def _run_phase(self, chat: UpstreamChat, request: PhaseRequest) -> PhaseResult:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise SessionCancelled(f"Session cancelled before {request.phase.value}")
        log_service.log_phase(self.session.session_key, request.phase.value, "started", {"cycle": request.cycle})
        result = await self.runner.run(chat, request)

        label = request.phase.value if not request.cycle else f"{request.phase.value}#{request.cycle}"
        self.report.phases.append(request.phase.value)
        if result.usage is not None:
            self.report.usage[label] = result.usage
        log_service.log_phase(
            self.session.session_key,
            request.phase.value,
            "completed",
            {"cycle": request.cycle, "finish_reason": result.finish_reason},
        )
        return result

    async def _run_note_phase(self, chat: UpstreamChat, phase: Phase, cycle: int = 0) -> PhaseResult:
        tag = NOTE_TAGS[phase]
        request = PhaseRequest(
            phase=phase,
            prompt=self._phase_prompt(phase, cycle),
            tools=tools_for(phase),
            include_thoughts=self.config.include_thoughts,
            block_names=(tag,),
            force_thoughts=True,
            cycle=cycle,
        )
        result = await self._run_phase(chat, request)
        body = result.blocks.get(tag)
        if body is None:
            body = fallback_body(result.collected_text)
        self._append_note(PhaseNote(tag=tag, body=body, phase=phase, cycle=cycle))
        return result

    async def _run_control(self, chat: UpstreamChat, cycle: int) -> ControlDecision:
        tag = NOTE_TAGS[Phase.CONTROL]
        request = PhaseRequest(
            phase=Phase.CONTROL,
            prompt=self._phase_prompt(Phase.CONTROL, cycle),
            tools=tools_for(Phase.CONTROL),
            include_thoughts=self.config.include_thoughts,
            block_names=(tag,),
            force_thoughts=True,
            cycle=cycle,
        )
        history_start = len(chat.get_history())
        result = await self._run_phase(chat, request)
        self._control_turns.append((history_start, len(chat.get_history())))

        decision = parse_control_decision(result.function_calls)
        self.report.decisions.append(decision)
        if self.config.debug:
            logger.debug(f"[agent-runner] CONTROL#{cycle} functionCalls={result.function_calls!r}")
        logger.info(f"[agent-runner] CONTROL#{cycle} decision={decision.action} ({decision.source})")

        detail = result.blocks.get(tag) or decision.notes
        if not detail and result.collected_text.strip():
            detail = fallback_body(result.collected_text)
        if detail:
            body = f"Decision: {decision.action}\n{detail}"
            self._append_note(PhaseNote(tag=tag, body=body, phase=Phase.CONTROL, cycle=cycle))
        return decision

    async def _run_final(self, agent_chat: UpstreamChat) -> PhaseResult:
        final_chat = self.upstream.create_chat(
            model=self.session.finalize_model,
            system_instruction=self._system_instruction("final"),
            history=self._final_history(agent_chat),
            include_thoughts=self.config.include_thoughts,
            top_p=self.config.top_p,
        )
        request = PhaseRequest(
            phase=Phase.FINAL,
            prompt=self._final_prompt(),
            tools=tools_for(Phase.FINAL),
            include_thoughts=self.config.include_thoughts,
        )
        return await self._run_phase(final_chat, request)

    # --- Context assembly ---

    def _append_note(self, note: PhaseNote) -> None:
        self.notes.append(note)
        self.report.notes.append(note)

    def notes_context(self, exclude_tags: tuple[str, ...] = ()) -> str:
        notes = [note for note in self.notes if note.tag not in exclude_tags]
        if self.note_filter is not None:
            notes = self.note_filter(notes)
        return "\n\n".join(note.render() for note in notes)

    def _final_history(self, agent_chat: UpstreamChat) -> list[Any]:
        history = agent_chat.get_history()
        hidden = set()
        for start, end in self._control_turns:
            hidden.update(range(start, end))
        return [entry for index, entry in enumerate(history) if index not in hidden]

    def _user_request_text(self) -> str:
        prefix = render_prompt("common.mandatory_url_instruction")
        text = content_text(self.session.user_content)
        return f"{prefix}\n{text}" if text else prefix

    def _phase_prompt(self, phase: Phase, cycle: int = 0) -> str:
        lines = [
            f"STEP={phase.value.upper()}",
            "",
            "=== CURRENT DATE ===",
            f"Today's date: {self.today}",
            'Use this date to determine what "latest" or "current" means.',
            "",
        ]
        if phase == Phase.CLARIFY:
            lines += ["=== USER REQUEST ===", self._user_request_text(), ""]
        context = self.notes_context()
        if context:
            lines += ["=== NOTES FROM EARLIER STEPS ===", context, ""]
        if self.config.include_grounding_summary and not self.grounding.is_empty():
            lines += [
                "=== GROUNDING SO FAR ===",
                self.grounding.summary(self.config.grounding_summary_limit),
                "",
            ]
        lines += [
            render_prompt(
                f"phases.{phase.value}",
                tag=NOTE_TAGS[phase],
                cycle=cycle,
                max_cycles=self.session.max_cycles,
            ),
            "",
            "=== BEGIN OUTPUT ===",
            "",
        ]
        return "\n".join(lines)

    def _final_prompt(self) -> str:
        contents = [*self.session.history, self.session.user_content]
        urls = extract_urls(contents)
        lines = [
            "STEP=FINAL",
            "",
            "=== CURRENT DATE ===",
            f"Today's date: {self.today}",
            "The user is asking this question on this date.",
            "",
        ]
        if urls:
            lines += ["User-provided URLs to inspect with urlContext:", *[f"- {u}" for u in urls], ""]
        context = self.notes_context(exclude_tags=(NOTE_TAGS[Phase.CONTROL],))
        if context:
            lines += ["=== RESEARCH NOTES ===", context, ""]
        if self.config.include_grounding_summary and not self.grounding.is_empty():
            lines += ["=== SOURCES ===", self.grounding.summary(self.config.grounding_summary_limit), ""]
        lines += [
            render_prompt("phases.final"),
            "",
            "=== ORIGINAL USER REQUEST ===",
            self._user_request_text(),
            "",
        ]
        return "\n".join(lines)

    def _system_instruction(self, kind: str) -> str:
        sections = [render_prompt("system.critical_rules"), "", render_prompt("system.common_policies")]
        if self.session.default_instruction:
            sections.append(f"---\nBASE SYSTEM INSTRUCTION\n---\n\n{self.session.default_instruction}")
        if self.session.user_instruction:
            sections.append(f"---\nUSER-SPECIFIED INSTRUCTION\n---\n\n{self.session.user_instruction}")
        persona = render_prompt("system.persona")
        if kind == "final":
            sections += ["", render_prompt("system.final"), "", f"---\nASSISTANT PERSONA\n---\n\n{persona}"]
        else:
            sections += [
                "",
                f"---\nAGENT PERSONA AND CAPABILITIES\n---\n\n{persona}",
                "",
                f"---\nSEARCH POLICY\n---\n\n{render_prompt('system.search_policy')}",
                "",
                f"---\nAGENT WORKFLOW\n---\n\n{render_prompt('system.workflow')}",
            ]
        return "\n".join(sections)

    def _log_usage_summary(self) -> None:
        total = self.report.total_usage()
        logger.debug("=== AGENT WORKFLOW TOKEN USAGE SUMMARY ===")
        for label, usage in self.report.usage.items():
            logger.debug(f"{label.upper():<14} {usage.total_tokens:,} tokens")
        grand = total.total_tokens or 1
        logger.debug(f"TOTAL          {total.total_tokens:,} tokens")
        for name, value in (
            ("User Input + System", total.prompt_tokens),
            ("Tool Declarations", total.tool_prompt_tokens),
            ("Model Output", total.output_tokens),
            ("Thoughts (Reasoning)", total.thought_tokens),
        ):
            logger.debug(f"  {name:<22} {value:,} tokens ({value / grand * 100:.1f}%)")
