"""Instruction text for the agent phases.

The text lives in ``prompts/prompts.json`` and code only refers to dotted keys
such as ``phases.research``. Long entries are stored as lists of lines. The
catalog is re-read whenever the file's mtime changes, so prompt edits apply
without a restart.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from string import Template
from typing import Any

PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"


@dataclass
class _Loaded:
    mtime_ns: int
    catalog: dict[str, Any]


_loaded: _Loaded | None = None


def _catalog() -> dict[str, Any]:
    global _loaded
    mtime_ns = PROMPTS_PATH.stat().st_mtime_ns
    if _loaded is None or _loaded.mtime_ns != mtime_ns:
        catalog = json.loads(PROMPTS_PATH.read_text(encoding="utf-8"))
        if not isinstance(catalog, dict):
            raise ValueError(f"{PROMPTS_PATH.name} must hold a JSON object")
        _loaded = _Loaded(mtime_ns=mtime_ns, catalog=catalog)
    return _loaded.catalog


def _entry_text(key: str) -> str:
    node: Any = _catalog()
    for segment in key.split("."):
        try:
            node = node[segment]
        except (KeyError, TypeError):
            raise KeyError(f"Prompt key not found: {key}") from None
    if isinstance(node, str):
        return node
    if isinstance(node, list) and all(isinstance(line, str) for line in node):
        return "\n".join(node)
    raise TypeError(f"Prompt key must map to a string or list of lines: {key}")


def render_prompt(key: str, **values: Any) -> str:
    """Fill ``$placeholders`` of the entry at ``key``; extra values are ignored."""
    template = Template(_entry_text(key))
    try:
        return template.substitute(values)
    except KeyError as exc:
        raise KeyError(f"Missing template value '{exc.args[0]}' for prompt '{key}'") from exc


def clear_prompt_cache() -> None:
    global _loaded
    _loaded = None
