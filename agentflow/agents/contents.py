"""Helpers for Gemini-style request contents (``[{role, parts: [{text}, ...]}]``)."""
from __future__ import annotations

import re
from typing import Any

from agentflow.config import AgentConfig
from agentflow.models.session import Session

URL_PATTERN = re.compile(r"(https?://[^\s)<>\"]+)")


def split_contents(contents: list[dict[str, Any]]) -> tuple[list[dict[str, Any]], dict[str, Any]]:
    """Separate prior conversation from the new user turn (the last entry)."""
    if not contents:
        raise ValueError("contents must not be empty")
    last = contents[-1]
    if not isinstance(last, dict):
        raise ValueError("last content entry must be an object")
    return list(contents[:-1]), last


def content_text(content: dict[str, Any] | None) -> str:
    if not isinstance(content, dict):
        return ""
    parts = content.get("parts")
    if not isinstance(parts, list):
        return ""
    texts = [str(p["text"]) for p in parts if isinstance(p, dict) and p.get("text")]
    return "\n".join(texts)


def extract_urls(contents: list[dict[str, Any]]) -> list[str]:
    urls: dict[str, None] = {}
    for content in contents:
        for match in URL_PATTERN.findall(content_text(content)):
            urls.setdefault(match, None)
    return list(urls)


def build_session(
    *,
    contents: list[dict[str, Any]],
    base_model: str,
    agent_config: AgentConfig,
    chat_id: str | None = None,
    request_id: str | None = None,
    finalize_model: str | None = None,
    default_instruction: str = "",
    user_instruction: str | None = None,
) -> Session:
    history, user_content = split_contents(contents)
    return Session(
        chat_id=chat_id,
        request_id=request_id,
        user_content=user_content,
        history=history,
        base_model=base_model,
        finalize_model=finalize_model or base_model,
        default_instruction=default_instruction or "",
        user_instruction=user_instruction or "",
        max_cycles=agent_config.max_cycles,
    )
