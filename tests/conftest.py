"""Pytest configuration for test discovery and shared fixtures.

This file ensures that:
- `src/` is importable
- Tests get a deterministic, offline embedding provider
- Tests get a fresh in-memory record store
"""

from __future__ import annotations

import hashlib
import math
import re
import sys
from datetime import UTC, datetime
from pathlib import Path

import pytest
import pytest_asyncio

# Ensure src directory is in path for imports
repo_root = Path(__file__).parent.parent
src_path = repo_root / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from kortex.errors import EmbeddingError  # noqa: E402
from kortex.models import Entry  # noqa: E402
from kortex.store import SQLiteRecordStore  # noqa: E402

_WORD = re.compile(r"\w+")


class BagOfWordsProvider:
    """Offline provider: hashed bag-of-words vectors, L2-normalized.

    Texts sharing words get high cosine similarity, which makes semantic
    ranking predictable in tests.
    """

    name = "fake"
    max_input_length = 10_000
    max_batch_size = 4

    def __init__(self, dimensions: int = 32, fail_on: str | None = None, available: bool = True):
        self._dimensions = dimensions
        self.fail_on = fail_on
        self.available = available
        self.initialize_calls = 0
        self.embed_calls = 0
        self.close_calls = 0

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def initialize(self) -> None:
        self.initialize_calls += 1

    async def is_available(self) -> bool:
        return self.available

    async def close(self) -> None:
        self.close_calls += 1

    def vector_for(self, text: str) -> list[float]:
        vector = [0.0] * self._dimensions
        for word in _WORD.findall(text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self._dimensions
            vector[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            vector[0] = 1.0
            return vector
        return [v / norm for v in vector]

    async def embed(self, text: str) -> list[float]:
        self.embed_calls += 1
        if self.fail_on is not None and self.fail_on in text:
            raise EmbeddingError(f"refusing to embed {text[:20]!r}", self.name)
        return self.vector_for(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed(t) for t in texts]


class InMemoryVectorIndex:
    """Brute-force cosine index with the VectorIndex surface, for unit tests."""

    def __init__(self, available: bool = True):
        self.available = available
        self.vectors: dict[str, list[float]] = {}

    def is_available(self) -> bool:
        return self.available

    def upsert(self, entry_id: str, vector: list[float]) -> None:
        if self.available:
            self.vectors[entry_id] = list(vector)

    def delete(self, entry_id: str) -> None:
        self.vectors.pop(entry_id, None)

    def get(self, entry_id: str) -> list[float] | None:
        return self.vectors.get(entry_id)

    def has(self, entry_id: str) -> bool:
        return entry_id in self.vectors

    def count(self) -> int:
        return len(self.vectors)

    def search(self, query_vector: list[float], k: int = 10) -> list[tuple[str, float]]:
        def cosine(a: list[float], b: list[float]) -> float:
            dot = sum(x * y for x, y in zip(a, b))
            na = math.sqrt(sum(x * x for x in a))
            nb = math.sqrt(sum(y * y for y in b))
            return dot / (na * nb) if na and nb else 0.0

        scored = [(eid, cosine(query_vector, v)) for eid, v in self.vectors.items()]
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:k]


@pytest.fixture
def memory_index() -> InMemoryVectorIndex:
    return InMemoryVectorIndex()


@pytest.fixture
def make_index():
    """Factory for in-memory indexes, e.g. a disabled one."""
    return InMemoryVectorIndex


@pytest.fixture
def fake_provider() -> BagOfWordsProvider:
    return BagOfWordsProvider()


@pytest.fixture
def make_provider():
    """Factory for providers with custom behavior."""
    return BagOfWordsProvider


@pytest_asyncio.fixture
async def store():
    """Fresh in-memory record store."""
    record_store = SQLiteRecordStore(":memory:")
    await record_store.initialize()
    yield record_store
    await record_store.close()


@pytest.fixture
def make_entry():
    """Build an Entry without touching a store."""

    def _make(entry_id: str, title: str, content: str = "Body text.", **kwargs) -> Entry:
        now = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)
        return Entry(
            id=entry_id,
            project_id=kwargs.pop("project_id", "proj"),
            title=title,
            type=kwargs.pop("type", "note"),
            content=content,
            created_at=now,
            updated_at=now,
            **kwargs,
        )

    return _make
