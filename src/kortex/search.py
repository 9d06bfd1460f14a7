"""Hybrid search engine combining keyword and semantic retrieval.

Keyword hits come from the record store's full-text index; semantic hits come
from the vector index. Hybrid mode fuses both ranked lists with Reciprocal
Rank Fusion (RRF):

    score(entry) = sum over lists containing entry of 1 / (k + rank + 1)

where ``rank`` is 0-based and ``k`` defaults to 60. Missing semantic
infrastructure downgrades searches to keyword mode instead of failing.
"""

import asyncio
import warnings
from collections.abc import Callable

from loguru import logger

from kortex.embedding import prepare_text_for_embedding
from kortex.errors import EmbeddingError
from kortex.index import VectorIndex
from kortex.models import Entry, EntryFilters, ScoreBreakdown, SearchMode, SearchResult
from kortex.service import EmbeddingService
from kortex.store import RecordStore

RRF_K = 60
DEFAULT_LIMIT = 10

DEFAULT_MIN_SCORES: dict[str, float] = {
    "keyword": 0.0,
    "semantic": 0.3,
    "hybrid": 0.05,
}

REINDEX_PAGE_SIZE = 100

ProgressCallback = Callable[[int, int], None]


def rank_normalized_scores(count: int) -> list[float]:
    """Scores ``(N - i) / N`` for ranks ``i = 0..N-1``."""
    return [(count - i) / count for i in range(count)]


def keyword_results(entries: list[Entry]) -> list[SearchResult]:
    return [
        SearchResult(entry=entry, score=score, score_breakdown=ScoreBreakdown(keyword=score))
        for entry, score in zip(entries, rank_normalized_scores(len(entries)))
    ]


def reciprocal_rank_fusion(
    semantic: list[SearchResult],
    keyword: list[SearchResult],
    k: int = RRF_K,
) -> list[SearchResult]:
    """Fuse two ranked lists into one ordered by cumulative RRF score.

    Entries present in both lists accumulate both contributions and keep both
    breakdown components. Ties keep discovery order (semantic list first).
    """
    fused: dict[str, SearchResult] = {}

    for rank, result in enumerate(semantic):
        fused[result.entry.id] = SearchResult(
            entry=result.entry,
            score=1 / (k + rank + 1),
            score_breakdown=ScoreBreakdown(semantic=result.score_breakdown.semantic),
        )

    for rank, result in enumerate(keyword):
        contribution = 1 / (k + rank + 1)
        existing = fused.get(result.entry.id)
        if existing is not None:
            existing.score += contribution
            existing.score_breakdown.keyword = result.score_breakdown.keyword
        else:
            fused[result.entry.id] = SearchResult(
                entry=result.entry,
                score=contribution,
                score_breakdown=ScoreBreakdown(keyword=result.score_breakdown.keyword),
            )

    return sorted(fused.values(), key=lambda r: r.score, reverse=True)


class HybridSearchEngine:
    """Keyword, semantic and RRF-fused hybrid search over the record store.

    Args:
        store: Record store providing entries and full-text search
        embedding_service: Optional service used to embed queries and entries
        vector_index: Optional vector index; semantic search requires both
        rrf_k: RRF damping constant
        default_limit: Result count used when a search passes no limit
    """

    def __init__(
        self,
        store: RecordStore,
        embedding_service: EmbeddingService | None = None,
        vector_index: VectorIndex | None = None,
        rrf_k: int = RRF_K,
        default_limit: int = DEFAULT_LIMIT,
    ):
        self.store = store
        self.embedding_service = embedding_service
        self.vector_index = vector_index
        self.rrf_k = rrf_k
        self.default_limit = default_limit
        self._background: set[asyncio.Task[None]] = set()

    def is_semantic_available(self) -> bool:
        return (
            self.embedding_service is not None
            and self.vector_index is not None
            and self.vector_index.is_available()
        )

    async def search(
        self,
        query: str,
        mode: SearchMode = "hybrid",
        filters: EntryFilters | None = None,
        limit: int | None = None,
        min_score: float | None = None,
    ) -> list[SearchResult]:
        """Search entries.

        Args:
            query: Free-text query
            mode: ``hybrid``, ``semantic`` or ``keyword``
            filters: Project/type/status filters
            limit: Maximum number of results (``default_limit`` when omitted)
            min_score: Semantic threshold overriding the per-mode default

        Returns:
            Results ordered by descending score
        """
        if limit is None:
            limit = self.default_limit

        effective = mode
        if not self.is_semantic_available():
            if mode == "semantic":
                self._warn_downgrade("Semantic search not available, using keyword search")
            effective = "keyword"

        if effective == "keyword":
            return await self._keyword_search(query, filters, limit)

        if effective == "hybrid":
            results = await self._hybrid_search(query, filters, limit)
        else:
            try:
                results = await self._semantic_search(query, filters, limit)
            except (EmbeddingError, ValueError) as e:
                logger.warning(f"Query embedding failed ({e}); using keyword results only")
                self._warn_downgrade(f"Semantic search failed ({e}), using keyword search")
                return await self._keyword_search(query, filters, limit)

        threshold = DEFAULT_MIN_SCORES[effective] if min_score is None else min_score
        if threshold > 0:
            results = [
                r
                for r in results
                if r.score_breakdown.semantic >= threshold
                or (effective == "hybrid" and r.score_breakdown.keyword > 0)
            ]
        return results

    @staticmethod
    def _warn_downgrade(message: str) -> None:
        logger.warning(message)
        warnings.warn(message, UserWarning, stacklevel=3)

    async def _keyword_search(
        self, query: str, filters: EntryFilters | None, limit: int
    ) -> list[SearchResult]:
        page_filters = (filters or EntryFilters()).model_copy(update={"limit": limit, "offset": 0})
        page = await self.store.search_entries(query, page_filters)
        return keyword_results(page.items[:limit])

    async def _semantic_search(
        self, query: str, filters: EntryFilters | None, limit: int
    ) -> list[SearchResult]:
        if self.embedding_service is None or self.vector_index is None:
            return []

        query_vector = await self.embedding_service.embed(query)
        # Over-fetch so post-hoc filtering can still fill the page
        candidates = self.vector_index.search(query_vector, limit * 2)

        results: list[SearchResult] = []
        for entry_id, similarity in candidates:
            entry = await self.store.get_entry(entry_id)
            if entry is None:
                continue
            if filters is not None and not filters.matches(entry):
                continue

            results.append(
                SearchResult(
                    entry=entry,
                    score=similarity,
                    score_breakdown=ScoreBreakdown(semantic=similarity),
                )
            )
            if len(results) >= limit:
                break
        return results

    async def _hybrid_search(
        self, query: str, filters: EntryFilters | None, limit: int
    ) -> list[SearchResult]:
        fetch_limit = limit * 2
        semantic, keyword = await asyncio.gather(
            self._semantic_search(query, filters, fetch_limit),
            self._keyword_search(query, filters, fetch_limit),
            return_exceptions=True,
        )
        if isinstance(keyword, BaseException):
            raise keyword
        if isinstance(semantic, (EmbeddingError, ValueError)):
            logger.warning(f"Query embedding failed ({semantic}); using keyword results only")
            return keyword_results([r.entry for r in keyword[:limit]])
        if isinstance(semantic, BaseException):
            raise semantic
        return reciprocal_rank_fusion(semantic, keyword, k=self.rrf_k)[:limit]

    async def index_entry(self, entry: Entry) -> None:
        """Embed an entry and upsert it into the vector index."""
        if not self.is_semantic_available():
            return
        assert self.embedding_service is not None and self.vector_index is not None

        text = prepare_text_for_embedding(
            entry.title, entry.content, entry.tags, entry.context_summary
        )
        vector = await self.embedding_service.embed(text)
        self.vector_index.upsert(entry.id, vector)

    async def remove_entry(self, entry_id: str) -> None:
        """Remove an entry's vector; the record itself belongs to the store."""
        if self.vector_index is None:
            return
        self.vector_index.delete(entry_id)

    async def _iter_entries(self) -> tuple[int, list[Entry]]:
        first = await self.store.list_entries(EntryFilters(limit=REINDEX_PAGE_SIZE, offset=0))
        entries = list(first.items)
        offset = len(first.items)
        while first.items and offset < first.total:
            page = await self.store.list_entries(
                EntryFilters(limit=REINDEX_PAGE_SIZE, offset=offset)
            )
            if not page.items:
                break
            entries.extend(page.items)
            offset += len(page.items)
        return first.total, entries

    async def _index_each(
        self, entries: list[Entry], total: int, progress_callback: ProgressCallback | None
    ) -> int:
        indexed = 0
        for done, entry in enumerate(entries, start=1):
            try:
                await self.index_entry(entry)
                indexed += 1
            except (EmbeddingError, ValueError) as e:
                logger.warning(f"Failed to index entry {entry.id}: {e}")
            if progress_callback is not None:
                progress_callback(done, total)
        return indexed

    async def reindex_all(self, progress_callback: ProgressCallback | None = None) -> int:
        """Re-embed every entry in the store, sequentially.

        A failure on one entry is logged and skipped.

        Returns:
            Number of entries indexed successfully
        """
        if not self.is_semantic_available():
            return 0

        total, entries = await self._iter_entries()
        logger.info(f"Reindexing {len(entries)} entries")
        indexed = await self._index_each(entries, len(entries) or total, progress_callback)
        logger.info(f"Indexed {indexed}/{len(entries)} entries")
        return indexed

    async def index_missing(self, progress_callback: ProgressCallback | None = None) -> int:
        """Index only entries that have no stored vector yet."""
        if not self.is_semantic_available():
            return 0
        assert self.vector_index is not None

        _, entries = await self._iter_entries()
        missing = [e for e in entries if not self.vector_index.has(e.id)]
        logger.info(f"{len(missing)} of {len(entries)} entries have no vector")
        return await self._index_each(missing, len(missing), progress_callback)

    def schedule_index(self, entry: Entry) -> asyncio.Task[None]:
        """Index an entry in the background after a write.

        Best-effort: failures are logged, never raised to the writer.
        """
        task = asyncio.create_task(self.index_entry(entry), name=f"index:{entry.id}")
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task[None]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).warning(f"Background indexing failed ({task.get_name()})")

    async def wait_for_background(self) -> None:
        """Wait for outstanding background indexing tasks."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
