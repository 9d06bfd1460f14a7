"""Wiring of store, embedding service, vector index, engine and retriever.

Missing optional infrastructure (no embedding provider, no sqlite-vec) yields
a keyword-only pipeline rather than an error.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from loguru import logger

from kortex.config import KortexConfig
from kortex.context import ContextRetriever
from kortex.errors import EmbeddingError
from kortex.index import VectorIndex
from kortex.search import HybridSearchEngine
from kortex.service import EmbeddingService
from kortex.store import SQLiteRecordStore


@dataclass
class Pipeline:
    config: KortexConfig
    store: SQLiteRecordStore
    embedding_service: EmbeddingService | None
    vector_index: VectorIndex | None
    engine: HybridSearchEngine
    retriever: ContextRetriever

    @property
    def semantic_enabled(self) -> bool:
        return self.engine.is_semantic_available()


@asynccontextmanager
async def open_pipeline(
    config: KortexConfig | None = None,
    embedding_service: EmbeddingService | None = None,
) -> AsyncIterator[Pipeline]:
    """Open every component for one command/request and close the store after.

    Args:
        config: Configuration (defaults when omitted)
        embedding_service: Pre-built service; one is created from config otherwise
    """
    config = config or KortexConfig()
    store = SQLiteRecordStore(config.storage.database_path)
    await store.initialize()

    service = embedding_service or EmbeddingService(config.embedding)
    vector_index: VectorIndex | None = None
    try:
        await service.initialize()
    except EmbeddingError as e:
        logger.warning(f"Semantic search disabled: {e}")
        service = None
    else:
        vector_index = VectorIndex(store.connection, service.dimensions)
        vector_index.initialize()
        if vector_index.requires_reindex:
            logger.warning("Embedding dimensions changed; run a full reindex")

    engine = HybridSearchEngine(
        store,
        service,
        vector_index,
        rrf_k=config.search.rrf_k,
        default_limit=config.search.default_limit,
    )
    retriever = ContextRetriever(
        store,
        search_engine=engine,
        min_score=config.context.min_relevance,
        related_score=config.context.related_score,
        max_tokens=config.context.max_tokens,
        max_items=config.context.max_items,
    )

    try:
        yield Pipeline(
            config=config,
            store=store,
            embedding_service=service,
            vector_index=vector_index,
            engine=engine,
            retriever=retriever,
        )
    finally:
        await engine.wait_for_background()
        if service is not None:
            await service.close()
        await store.close()
