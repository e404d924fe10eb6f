"""Gemini client factory and the streaming chat adapter used by agent phases."""
from __future__ import annotations

from typing import Any, AsyncIterator, Iterable

from google import genai
from google.genai import types

from agentflow.agents.tools import FUNCTION_DECLARATIONS, GOOGLE_SEARCH, URL_CONTEXT
from agentflow.config import settings
from agentflow.models.stream import (
    CitationMetadata,
    CitationSource,
    ContentPart,
    FunctionCall,
    StreamChunk,
    TokenUsage,
    UrlContext,
)


def _enum_name(value: Any) -> str | None:
    if value is None:
        return None
    name = getattr(value, "name", None)
    return name if isinstance(name, str) else str(value)


def _schema(node: dict[str, Any]) -> types.Schema:
    kwargs: dict[str, Any] = {"type": types.Type(str(node["type"]).upper())}
    if node.get("description"):
        kwargs["description"] = node["description"]
    if node.get("enum"):
        kwargs["enum"] = list(node["enum"])
    if node.get("properties"):
        kwargs["properties"] = {key: _schema(child) for key, child in node["properties"].items()}
    if node.get("required"):
        kwargs["required"] = list(node["required"])
    return types.Schema(**kwargs)


def build_tools(names: Iterable[str]) -> list[types.Tool]:
    """Translate tool-table names into SDK tool objects."""
    tools: list[types.Tool] = []
    declarations: list[types.FunctionDeclaration] = []
    for name in names:
        if name == GOOGLE_SEARCH:
            tools.append(types.Tool(google_search=types.GoogleSearch()))
        elif name == URL_CONTEXT:
            tools.append(types.Tool(url_context=types.UrlContext()))
        elif name in FUNCTION_DECLARATIONS:
            decl = FUNCTION_DECLARATIONS[name]
            declarations.append(
                types.FunctionDeclaration(
                    name=decl["name"],
                    description=decl.get("description", ""),
                    parameters=_schema(decl["parameters"]),
                )
            )
        else:
            raise ValueError(f"Unknown tool: {name}")
    if declarations:
        tools.append(types.Tool(function_declarations=declarations))
    return tools


def _citations_from_candidate(candidate: Any) -> CitationMetadata | None:
    metadata = CitationMetadata()

    grounding = getattr(candidate, "grounding_metadata", None)
    if grounding is not None:
        for query in getattr(grounding, "web_search_queries", None) or []:
            if isinstance(query, str):
                metadata.queries.append(query)
        for grounding_chunk in getattr(grounding, "grounding_chunks", None) or []:
            web = getattr(grounding_chunk, "web", None)
            uri = getattr(web, "uri", None) if web is not None else None
            title = getattr(web, "title", None) if web is not None else None
            if uri and title:
                metadata.sources.append(CitationSource(uri=uri, title=title))

    url_meta = getattr(candidate, "url_context_metadata", None)
    for entry in (getattr(url_meta, "url_metadata", None) or []) if url_meta is not None else []:
        uri = getattr(entry, "retrieved_url", None)
        if uri:
            metadata.url_contexts.append(
                UrlContext(uri=uri, status=_enum_name(getattr(entry, "url_retrieval_status", None)))
            )

    return None if metadata.is_empty() else metadata


def _usage_from_chunk(chunk: Any) -> TokenUsage | None:
    usage = getattr(chunk, "usage_metadata", None)
    if usage is None:
        return None
    return TokenUsage(
        prompt_tokens=getattr(usage, "prompt_token_count", 0) or 0,
        tool_prompt_tokens=getattr(usage, "tool_use_prompt_token_count", 0) or 0,
        output_tokens=getattr(usage, "candidates_token_count", 0) or 0,
        thought_tokens=getattr(usage, "thoughts_token_count", 0) or 0,
        total_tokens=getattr(usage, "total_token_count", 0) or 0,
    )


def normalize_chunk(chunk: Any) -> StreamChunk:
    """Map a google-genai response chunk onto StreamChunk."""
    candidates = getattr(chunk, "candidates", None) or []
    candidate = candidates[0] if candidates else None
    result = StreamChunk(usage=_usage_from_chunk(chunk))
    if candidate is None:
        return result

    content = getattr(candidate, "content", None)
    result.role = getattr(content, "role", None) if content is not None else None
    for part in (getattr(content, "parts", None) or []) if content is not None else []:
        call = getattr(part, "function_call", None)
        if call is not None and getattr(call, "name", None):
            result.parts.append(
                ContentPart(function_call=FunctionCall(name=call.name, args=getattr(call, "args", None)))
            )
            continue
        text = getattr(part, "text", None)
        if text is not None:
            result.parts.append(ContentPart(text=str(text), thought=bool(getattr(part, "thought", False))))

    result.citations = _citations_from_candidate(candidate)
    result.finish_reason = _enum_name(getattr(candidate, "finish_reason", None))
    return result


class GeminiChat:
    """One conversation (system instruction + history) with streamed turns."""

    def __init__(
        self,
        chat: Any,
        *,
        model: str,
        system_instruction: str,
        include_thoughts: bool = True,
        top_p: float | None = None,
    ):
        self._chat = chat
        self.model = model
        self.system_instruction = system_instruction
        self.include_thoughts = include_thoughts
        self.top_p = top_p

    def _turn_config(self, tools: Iterable[str], include_thoughts: bool | None) -> types.GenerateContentConfig:
        # A per-message config replaces the chat's config, so it is rebuilt in full
        kwargs: dict[str, Any] = {
            "system_instruction": self.system_instruction or None,
            "thinking_config": types.ThinkingConfig(
                include_thoughts=self.include_thoughts if include_thoughts is None else include_thoughts
            ),
        }
        if self.top_p is not None:
            kwargs["top_p"] = self.top_p
        sdk_tools = build_tools(tools)
        if sdk_tools:
            kwargs["tools"] = sdk_tools
        return types.GenerateContentConfig(**kwargs)

    async def send_message_stream(
        self,
        message: str,
        *,
        tools: Iterable[str] = (),
        include_thoughts: bool | None = None,
    ) -> AsyncIterator[StreamChunk]:
        stream = await self._chat.send_message_stream(
            message,
            config=self._turn_config(tools, include_thoughts),
        )
        async for raw in stream:
            yield normalize_chunk(raw)

    def get_history(self) -> list[Any]:
        return list(self._chat.get_history(curated=False))


class GeminiUpstream:
    """Creates chats on the Gemini API; the orchestrator's upstream service."""

    def __init__(self, sdk_client: Any):
        self._client = sdk_client

    def create_chat(
        self,
        *,
        model: str,
        system_instruction: str,
        history: list[Any] | None = None,
        include_thoughts: bool = True,
        top_p: float | None = None,
    ) -> GeminiChat:
        config = types.GenerateContentConfig(
            system_instruction=system_instruction or None,
            thinking_config=types.ThinkingConfig(include_thoughts=include_thoughts),
            top_p=top_p,
        )
        chat = self._client.aio.chats.create(model=model, config=config, history=list(history or []))
        return GeminiChat(
            chat,
            model=model,
            system_instruction=system_instruction,
            include_thoughts=include_thoughts,
            top_p=top_p,
        )


def get_client() -> GeminiUpstream:
    """Build the Gemini-backed upstream from settings."""
    api_key = settings.gemini_api_key.strip()
    if not api_key:
        raise RuntimeError("GEMINI_API_KEY is not set")
    return GeminiUpstream(genai.Client(api_key=api_key))


def get_model() -> str:
    """Base model used for agent phases."""
    if settings.agent_base_model:
        return settings.agent_base_model
    return settings.default_model


_client: GeminiUpstream | None = None


def client() -> GeminiUpstream:
    """Get or create the upstream client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client
