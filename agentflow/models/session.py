from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from agentflow.agents.block_extractor import wrap_block
from agentflow.models.stream import FunctionCall, TokenUsage


class Phase(str, Enum):
    CLARIFY = "clarify"
    PLAN = "plan"
    RESEARCH = "research"
    CONTROL = "control"
    FINAL = "final"


ControlAction = Literal["research", "final"]


@dataclass
class Session:
    """Everything one incoming agent request needs; lives for one orchestrator run."""

    chat_id: str | None
    request_id: str | None
    user_content: dict[str, Any]
    base_model: str
    finalize_model: str
    history: list[dict[str, Any]] = field(default_factory=list)
    default_instruction: str = ""
    user_instruction: str = ""
    max_cycles: int = 5

    @property
    def session_key(self) -> str:
        return f"{self.chat_id or '-'}:{self.request_id or '-'}"


@dataclass(frozen=True)
class PhaseNote:
    tag: str
    body: str
    phase: Phase
    cycle: int = 0

    def render(self) -> str:
        return wrap_block(self.tag, self.body)


@dataclass(frozen=True)
class ControlDecision:
    action: ControlAction
    notes: str = ""
    # "call" when parsed from the decision call, "default" when none was usable
    source: str = "call"


@dataclass
class PhaseRequest:
    phase: Phase
    prompt: str
    tools: tuple[str, ...] = ()
    include_thoughts: bool = True
    block_names: tuple[str, ...] = ()
    force_thoughts: bool = False
    force_answer: bool = False
    cycle: int = 0


@dataclass
class PhaseResult:
    phase: Phase
    function_calls: list[FunctionCall] = field(default_factory=list)
    has_answer: bool = False
    # Every text part, thoughts included
    collected_text: str = ""
    answer_text: str = ""
    blocks: dict[str, str | None] = field(default_factory=dict)
    finish_reason: str | None = None
    usage: TokenUsage | None = None
    chunk_count: int = 0
