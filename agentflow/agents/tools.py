"""Fixed tool table per phase and the decision tool contract."""
from __future__ import annotations

from typing import Any

from agentflow.models.session import Phase

GOOGLE_SEARCH = "google_search"
URL_CONTEXT = "url_context"
DECISION_TOOL = "take_next_step"

SEARCH_TOOL_NAMES = frozenset({GOOGLE_SEARCH, "googleSearch"})
URL_CONTEXT_TOOL_NAMES = frozenset({URL_CONTEXT, "urlContext"})

DECISION_DECLARATION: dict[str, Any] = {
    "name": DECISION_TOOL,
    "description": "Choose the next step of the research workflow.",
    "parameters": {
        "type": "object",
        "properties": {
            "action": {
                "type": "string",
                "enum": ["research", "final"],
                "description": "'research' runs another research cycle, 'final' writes the answer.",
            },
            "notes": {
                "type": "string",
                "description": "What is still missing, or why the research is sufficient.",
            },
        },
        "required": ["action"],
    },
}

FUNCTION_DECLARATIONS: dict[str, dict[str, Any]] = {DECISION_TOOL: DECISION_DECLARATION}

PHASE_TOOLS: dict[Phase, tuple[str, ...]] = {
    Phase.CLARIFY: (GOOGLE_SEARCH, URL_CONTEXT),
    Phase.PLAN: (GOOGLE_SEARCH, URL_CONTEXT),
    Phase.RESEARCH: (GOOGLE_SEARCH, URL_CONTEXT),
    Phase.CONTROL: (DECISION_TOOL,),
    Phase.FINAL: (),
}


def tools_for(phase: Phase) -> tuple[str, ...]:
    return PHASE_TOOLS[phase]
