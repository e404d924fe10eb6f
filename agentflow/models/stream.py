from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class FunctionCall:
    name: str
    # Either an object payload or a JSON-encoded string, as the upstream sent it
    args: Any = None


@dataclass
class ContentPart:
    """One part of an upstream chunk: text (optionally a thought) or a function call."""

    text: str | None = None
    thought: bool = False
    function_call: FunctionCall | None = None


@dataclass
class CitationSource:
    uri: str
    title: str


@dataclass
class UrlContext:
    uri: str
    status: str | None = None
    title: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"uri": self.uri}
        if self.status:
            data["status"] = self.status
        if self.title:
            data["title"] = self.title
        return data


@dataclass
class CitationMetadata:
    queries: list[str] = field(default_factory=list)
    sources: list[CitationSource] = field(default_factory=list)
    url_contexts: list[UrlContext] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.queries or self.sources or self.url_contexts)


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    tool_prompt_tokens: int = 0
    output_tokens: int = 0
    thought_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: "TokenUsage | None") -> None:
        if other is None:
            return
        self.prompt_tokens += other.prompt_tokens
        self.tool_prompt_tokens += other.tool_prompt_tokens
        self.output_tokens += other.output_tokens
        self.thought_tokens += other.thought_tokens
        self.total_tokens += other.total_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt": self.prompt_tokens,
            "tool": self.tool_prompt_tokens,
            "output": self.output_tokens,
            "thoughts": self.thought_tokens,
            "total": self.total_tokens,
        }


@dataclass
class StreamChunk:
    """Normalized increment of a streamed generation call."""

    parts: list[ContentPart] = field(default_factory=list)
    citations: CitationMetadata | None = None
    finish_reason: str | None = None
    usage: TokenUsage | None = None
    role: str | None = None

    @property
    def function_calls(self) -> list[FunctionCall]:
        return [p.function_call for p in self.parts if p.function_call is not None]


@dataclass
class ShapedPart:
    text: str
    thought: bool

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "thought": self.thought}
