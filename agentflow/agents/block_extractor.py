from __future__ import annotations

from typing import Iterable

UNSTRUCTURED_MARKER = "[unstructured output: closing or opening tag not found]"


def extract_block(text: str | None, tag: str) -> str | None:
    """Return the trimmed body of ``<tag>...</tag>`` in ``text``.

    A block that was opened but never closed (e.g. output cut by a length or
    safety limit) yields everything after the opening tag. ``None`` means the
    opening tag never appeared.
    """
    if not text or not tag:
        return None
    opening = f"<{tag}>"
    closing = f"</{tag}>"
    start = text.find(opening)
    if start < 0:
        return None
    body_start = start + len(opening)
    end = text.find(closing, body_start)
    if end < 0:
        return text[body_start:].strip()
    return text[body_start:end].strip()


def extract_blocks(text: str | None, tags: Iterable[str]) -> dict[str, str | None]:
    return {tag: extract_block(text, tag) for tag in tags}


def wrap_block(tag: str, body: str) -> str:
    return f"<{tag}>\n{body}\n</{tag}>"


def fallback_body(collected_text: str) -> str:
    """Raw phase text marked so later phases know it lost its structure."""
    raw = (collected_text or "").strip() or "(no output)"
    return f"{UNSTRUCTURED_MARKER}\n{raw}"
