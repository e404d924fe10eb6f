"""Turn upstream content parts into thought/answer parts for the transport."""
from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from agentflow.models.stream import ContentPart, ShapedPart

PHASE_SEPARATOR = "\n\n"
ANSWER_SEPARATOR = "\n"


@dataclass
class ShaperState:
    """Per-session marker of the phase that last produced output."""

    last_phase: str | None = None
    # Thought flag of the last shaped part, within last_phase
    last_thought: bool = False


@dataclass
class ShapedBatch:
    parts: list[ShapedPart] = field(default_factory=list)
    has_non_thought: bool = False

    def __bool__(self) -> bool:
        return bool(self.parts)


def shape_parts(
    parts: list[ContentPart],
    phase: str,
    state: ShaperState,
    *,
    force_thoughts: bool = False,
    force_answer: bool = False,
    debug: bool = False,
) -> ShapedBatch:
    """Shape one chunk's parts.

    Parts without text are dropped. The first shaped part gets a blank-line
    separator when output switches to a new phase; otherwise an answer part that
    follows a thought part of the same phase, in this chunk or an earlier one,
    gets a single newline. The state only advances when something was shaped.
    """
    batch = ShapedBatch()
    if not parts:
        return batch

    is_transition = state.last_phase is not None and state.last_phase != phase
    previous_thought = state.last_thought and not is_transition

    for part in parts:
        if part is None or not part.text:
            continue

        if force_answer:
            thought = False
        elif force_thoughts:
            thought = True
        else:
            thought = bool(part.thought)

        text = part.text
        if not batch.parts and is_transition:
            text = PHASE_SEPARATOR + text
        elif previous_thought and not thought:
            text = ANSWER_SEPARATOR + text

        batch.parts.append(ShapedPart(text=text, thought=thought))
        previous_thought = thought
        if debug:
            logger.debug(f"[agent-debug] part text={part.text!r} thought={thought} step={phase}")

    if batch.parts:
        state.last_phase = phase
        state.last_thought = previous_thought
        batch.has_non_thought = any(not p.thought for p in batch.parts)
    return batch
