from __future__ import annotations

from typing import Any, Iterable

from agentflow.agents.tool_calls import normalize_args
from agentflow.agents.tools import SEARCH_TOOL_NAMES, URL_CONTEXT_TOOL_NAMES
from agentflow.models.stream import CitationMetadata, FunctionCall, UrlContext

URL_CONTEXT_TITLE = "(from urlContext)"


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


class GroundingAccumulator:
    """Search queries and cited sources gathered over a whole session.

    One instance per session. Queries keep their first spelling and are
    de-duplicated case-insensitively; sources are keyed by URI (last title
    wins) and need both a URI and a title.
    """

    def __init__(self) -> None:
        self._queries: dict[str, str] = {}
        self._sources: dict[str, str] = {}
        self._url_contexts: dict[str, UrlContext] = {}

    @property
    def queries(self) -> list[str]:
        return list(self._queries.values())

    @property
    def sources(self) -> dict[str, str]:
        return dict(self._sources)

    def is_empty(self) -> bool:
        return not (self._queries or self._sources)

    def has_citations(self) -> bool:
        """Anything worth a closing citation chunk, URL contexts included."""
        return not self.is_empty() or bool(self._url_contexts)

    def add_query(self, query: Any) -> bool:
        cleaned = _clean(query)
        if not cleaned:
            return False
        key = cleaned.casefold()
        if key in self._queries:
            return False
        self._queries[key] = cleaned
        return True

    def add_source(self, uri: Any, title: Any) -> bool:
        uri, title = _clean(uri), _clean(title)
        if not uri or not title:
            return False
        self._sources[uri] = title
        return True

    def add_url_context(self, context: UrlContext) -> None:
        uri = _clean(context.uri)
        if not uri:
            return
        known = self._url_contexts.get(uri)
        if known is None:
            self._url_contexts[uri] = UrlContext(uri=uri, status=context.status, title=context.title)
            return
        # Keep the first entry, fill in what it was missing
        known.status = known.status or context.status
        known.title = known.title or context.title

    def update_from_metadata(self, metadata: CitationMetadata | None) -> None:
        if metadata is None:
            return
        for query in metadata.queries:
            self.add_query(query)
        for source in metadata.sources:
            self.add_source(source.uri, source.title)
        for context in metadata.url_contexts:
            self.add_url_context(context)

    def update_from_calls(self, calls: Iterable[FunctionCall]) -> None:
        for call in calls or []:
            if call is None:
                continue
            args = normalize_args(call.args)
            if not args:
                continue
            if call.name in SEARCH_TOOL_NAMES:
                self.add_query(args.get("query"))
            elif call.name in URL_CONTEXT_TOOL_NAMES:
                self.add_source(args.get("url"), URL_CONTEXT_TITLE)

    def snapshot(self) -> dict[str, list] | None:
        if self.is_empty():
            return None
        return {
            "sources": [{"uri": uri, "title": title} for uri, title in self._sources.items()],
            "queries": self.queries,
        }

    def url_context_snapshot(self) -> list[dict[str, Any]]:
        """Retrieved URL contexts, falling back to known sources when none were reported."""
        if self._url_contexts:
            return [c.to_dict() for c in self._url_contexts.values()]
        return [{"uri": uri, "title": title} for uri, title in self._sources.items()]

    def summary(self, limit: int = 8) -> str:
        """Capped briefing for later phase prompts."""
        limit = max(int(limit), 1)
        lines: list[str] = []
        if self._sources:
            lines.append("Sources consulted so far:")
            for uri, title in list(self._sources.items())[:limit]:
                lines.append(f"- {title} ({uri})")
            hidden = len(self._sources) - limit
            if hidden > 0:
                lines.append(f"- ... and {hidden} more")
        if self._queries:
            if lines:
                lines.append("")
            lines.append("Search queries used so far:")
            for query in self.queries[:limit]:
                lines.append(f"- {query}")
            hidden = len(self._queries) - limit
            if hidden > 0:
                lines.append(f"- ... and {hidden} more")
        return "\n".join(lines)
