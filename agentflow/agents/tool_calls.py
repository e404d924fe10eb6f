"""Normalize function-call payloads and read the control decision out of them."""
from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any, Iterable

from loguru import logger

from agentflow.agents.tools import DECISION_TOOL
from agentflow.models.session import ControlDecision
from agentflow.models.stream import FunctionCall

ACTIONS = ("research", "final")
ACTION_KEYS = ("action", "step")


def normalize_args(args: Any) -> dict[str, Any] | None:
    """Coerce call arguments into a dict.

    Tried in order: mapping payloads, JSON-encoded strings holding an object.
    Anything else, including undecodable strings, yields ``None``.
    """
    if isinstance(args, Mapping):
        return dict(args)
    if isinstance(args, (str, bytes)):
        try:
            decoded = json.loads(args)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        return dict(decoded) if isinstance(decoded, Mapping) else None
    return None


def find_call(calls: Iterable[FunctionCall], name: str) -> FunctionCall | None:
    for call in calls or []:
        if call is not None and call.name == name:
            return call
    return None


def parse_control_decision(
    calls: Iterable[FunctionCall],
    call_name: str = DECISION_TOOL,
) -> ControlDecision:
    """Read the next-step decision; anything unusable means ``final``."""
    call = find_call(calls, call_name)
    if call is None:
        return ControlDecision(action="final", source="default")

    args = normalize_args(call.args)
    if args is None:
        logger.warning(f"Unparseable {call_name} arguments: {call.args!r}")
        return ControlDecision(action="final", source="default")

    action: str | None = None
    for key in ACTION_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            action = value.strip().lower()
            break

    notes = args.get("notes")
    notes = notes.strip() if isinstance(notes, str) else ""

    if action not in ACTIONS:
        logger.warning(f"Unknown {call_name} action {action!r}; treating as final")
        return ControlDecision(action="final", notes=notes, source="default")
    return ControlDecision(action=action, notes=notes)
