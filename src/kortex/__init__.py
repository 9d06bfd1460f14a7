"""Hybrid retrieval pipeline for a personal/team knowledge base.

This package stores nothing itself beyond vectors: entries live in a record
store, and kortex indexes them for keyword and semantic search, fuses both
signals with Reciprocal Rank Fusion, and packs the best matches into a
token-bounded bundle for a language model.

Architecture:
    - embedding: Provider implementations (sentence-transformers, Ollama, OpenAI)
    - service: Provider auto-selection and lazy initialization
    - index: sqlite-vec vector index co-located with the record store
    - search: Keyword, semantic and RRF hybrid search
    - context: Token-budgeted context assembly and LLM formatting
    - models: Pydantic schemas for entries, results and context items

Usage:
    >>> from kortex.pipeline import open_pipeline
    >>> async with open_pipeline() as pipeline:
    ...     result = await pipeline.retriever.retrieve("database choice", max_tokens=2000)
"""

__version__ = "0.3.0"

from kortex.models import (
    ContextItem,
    ContextRetrievalResult,
    Entry,
    EntryFilters,
    EntryRelation,
    ScoreBreakdown,
    SearchResult,
)

__all__ = [
    "ContextItem",
    "ContextRetrievalResult",
    "Entry",
    "EntryFilters",
    "EntryRelation",
    "ScoreBreakdown",
    "SearchResult",
]
