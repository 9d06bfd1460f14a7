"""Context retrieval: token-bounded bundles of entries for LLM consumption.

Token counts are estimated at roughly 4 characters per token over
title + type + content + tags. This is an approximation, not a tokenizer.
"""

import math
from xml.sax.saxutils import escape

from loguru import logger

from kortex.index import VectorIndex
from kortex.models import (
    ContextFormat,
    ContextItem,
    ContextRetrievalResult,
    EntryFilters,
)
from kortex.search import HybridSearchEngine
from kortex.service import EmbeddingService
from kortex.store import RecordStore

CHARS_PER_TOKEN = 4
TRUNCATION_MARKER = "...[truncated]"
MIN_TRUNCATED_CHARS = 100

CONTEXT_MIN_SCORE = 0.15
RELATED_SCORE = 0.5
RELATED_HEADROOM = 0.8
DEFAULT_MAX_TOKENS = 4000
DEFAULT_MAX_ITEMS = 10

_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def estimate_tokens(item: ContextItem) -> int:
    """Approximate token cost of an item (``ceil(chars / 4)``)."""
    text = " ".join([item.title, item.type, item.content, " ".join(item.tags)])
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_item(item: ContextItem, max_tokens: int) -> ContextItem | None:
    """Cut an item's content so its estimate fits in ``max_tokens``.

    Header metadata is kept and a truncation marker appended. Returns None when
    not even the header plus a minimal amount of content fits.
    """
    header_tokens = estimate_tokens(item.model_copy(update={"content": ""}))
    if header_tokens >= max_tokens:
        return None

    content_budget = (max_tokens - header_tokens) * CHARS_PER_TOKEN - len(TRUNCATION_MARKER)
    if content_budget < MIN_TRUNCATED_CHARS:
        return None

    return item.model_copy(update={"content": item.content[:content_budget] + TRUNCATION_MARKER})


def xml_escape(value: str) -> str:
    """Escape the five XML metacharacters."""
    return escape(value, _XML_ENTITIES)


class ContextRetriever:
    """Runs hybrid search and packs the results into a token budget.

    Args:
        store: Record store (entries and relations)
        embedding_service: Optional embedding service for semantic search
        vector_index: Optional vector index for semantic search
        search_engine: Pre-built engine; overrides the two arguments above
        min_score: Semantic floor for context candidates
        related_score: Relevance assigned to related entries
        max_tokens: Token budget used when a call passes none
        max_items: Item cap used when a call passes none
    """

    def __init__(
        self,
        store: RecordStore,
        embedding_service: EmbeddingService | None = None,
        vector_index: VectorIndex | None = None,
        *,
        search_engine: HybridSearchEngine | None = None,
        min_score: float = CONTEXT_MIN_SCORE,
        related_score: float = RELATED_SCORE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        max_items: int = DEFAULT_MAX_ITEMS,
    ):
        self.store = store
        self.search_engine = search_engine or HybridSearchEngine(
            store, embedding_service, vector_index
        )
        self.min_score = min_score
        self.related_score = related_score
        self.max_tokens = max_tokens
        self.max_items = max_items

    async def retrieve(
        self,
        query: str,
        max_tokens: int | None = None,
        max_items: int | None = None,
        filters: EntryFilters | None = None,
        include_related: bool = False,
    ) -> ContextRetrievalResult:
        """Retrieve relevant context for a query.

        Results are accepted greedily in score order while they fit. The first
        one that overflows is included in truncated form when possible and
        packing stops there.
        """
        if max_tokens is None:
            max_tokens = self.max_tokens
        if max_items is None:
            max_items = self.max_items

        results = await self.search_engine.search(
            query,
            mode="hybrid",
            filters=filters,
            limit=max_items * 2,
            min_score=self.min_score,
        )

        items: list[ContextItem] = []
        total_tokens = 0
        seen: set[str] = set()

        for result in results:
            if len(items) >= max_items:
                break
            if result.entry.id in seen:
                continue

            item = ContextItem.from_entry(result.entry, result.score)
            item_tokens = estimate_tokens(item)

            if total_tokens + item_tokens > max_tokens:
                truncated = truncate_item(item, max_tokens - total_tokens)
                if truncated is not None:
                    items.append(truncated)
                    total_tokens += estimate_tokens(truncated)
                    seen.add(item.id)
                break

            items.append(item)
            total_tokens += item_tokens
            seen.add(item.id)

            has_headroom = (
                len(items) < max_items and total_tokens < max_tokens * RELATED_HEADROOM
            )
            if include_related and has_headroom:
                for related in await self._related_items(item.id, seen):
                    if len(items) >= max_items:
                        break
                    related_tokens = estimate_tokens(related)
                    if total_tokens + related_tokens > max_tokens:
                        break
                    items.append(related)
                    total_tokens += related_tokens
                    seen.add(related.id)

        logger.debug(
            f"Context for {query!r}: {len(items)} items, ~{total_tokens} tokens "
            f"from {len(results)} candidates"
        )
        return ContextRetrievalResult(
            items=items,
            total_tokens_estimate=total_tokens,
            truncated=len(results) > len(items),
        )

    async def get_entry_context(
        self,
        entry_id: str,
        include_related: bool = False,
        max_tokens: int | None = None,
    ) -> ContextRetrievalResult:
        """Context for one known entry, optionally with its related entries."""
        if max_tokens is None:
            max_tokens = self.max_tokens
        entry = await self.store.get_entry(entry_id)
        if entry is None:
            return ContextRetrievalResult()

        items = [ContextItem.from_entry(entry, 1.0)]
        total_tokens = estimate_tokens(items[0])
        seen = {entry_id}

        if include_related:
            for related in await self._related_items(entry_id, seen):
                related_tokens = estimate_tokens(related)
                if total_tokens + related_tokens > max_tokens:
                    break
                items.append(related)
                total_tokens += related_tokens
                seen.add(related.id)

        return ContextRetrievalResult(items=items, total_tokens_estimate=total_tokens)

    async def _related_items(self, entry_id: str, seen: set[str]) -> list[ContextItem]:
        items: list[ContextItem] = []
        for relation in await self.store.get_entry_relations(entry_id):
            related_id = relation.other_id(entry_id)
            if related_id in seen:
                continue
            entry = await self.store.get_entry(related_id)
            if entry is not None:
                items.append(ContextItem.from_entry(entry, self.related_score))
        return items

    def format_for_llm(
        self, result: ContextRetrievalResult, format: ContextFormat = "markdown"
    ) -> str:
        return format_for_llm(result, format)


def format_for_llm(result: ContextRetrievalResult, format: ContextFormat = "markdown") -> str:
    """Render a retrieval result as XML markup or markdown prose."""
    if format not in ("markdown", "xml"):
        raise ValueError(f"Unknown context format: {format!r}")

    if not result.items:
        if format == "xml":
            return '<knowledge_entries count="0"></knowledge_entries>'
        return "No relevant context found."

    if format == "xml":
        return _format_xml(result)
    return _format_markdown(result)


def _format_xml(result: ContextRetrievalResult) -> str:
    entries = []
    for item in result.items:
        truncated_attr = ' truncated="true"' if item.content.endswith(TRUNCATION_MARKER) else ""
        entries.append(
            f'  <entry id="{xml_escape(item.id)}" type="{item.type}" '
            f'status="{item.metadata.status}">\n'
            f"    <title>{xml_escape(item.title)}</title>\n"
            f"    <relevance>{item.relevance_score * 100:.0f}%</relevance>\n"
            f"    <tags>{xml_escape(', '.join(item.tags))}</tags>\n"
            f"    <created>{item.metadata.created_at}</created>\n"
            f"    <content{truncated_attr}>\n"
            f"{xml_escape(item.content)}\n"
            f"    </content>\n"
            f"  </entry>"
        )
    body = "\n".join(entries)
    return f'<knowledge_entries count="{len(result.items)}">\n{body}\n</knowledge_entries>'


def _format_markdown(result: ContextRetrievalResult) -> str:
    sections = []
    for item in result.items:
        header = f"## {item.title} [{item.type}]"
        meta = [f"ID: {item.id}", f"Relevance: {item.relevance_score * 100:.0f}%"]
        if item.tags:
            meta.append(f"Tags: {', '.join(item.tags)}")
        sections.append(f"{header}\n{' | '.join(meta)}\n\n{item.content}")
    return "\n\n---\n\n".join(sections)
