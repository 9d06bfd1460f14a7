"""End-to-end tests: SQLite store + sqlite-vec index + search + context assembly."""

import pytest

from kortex.config import (
    ContextSettings,
    EmbeddingSettings,
    KortexConfig,
    SearchSettings,
    StorageSettings,
)
from kortex.context import format_for_llm
from kortex.errors import StorageError
from kortex.pipeline import open_pipeline
from kortex.service import EmbeddingService

pytestmark = pytest.mark.integration


def service_for(provider, name="local"):
    return EmbeddingService(
        EmbeddingSettings(provider=name), provider_factory=lambda _name, _settings: provider
    )


@pytest.fixture
def config(tmp_path):
    return KortexConfig(storage=StorageSettings(database_path=tmp_path / "kortex.db"))


def require_semantic(pipeline):
    if not pipeline.semantic_enabled:
        pytest.skip("sqlite-vec cannot be loaded on this interpreter")


class TestPipelineFlow:
    @pytest.mark.asyncio
    async def test_write_index_search_and_retrieve(self, config, make_provider):
        provider = make_provider(dimensions=512)

        async with open_pipeline(config, service_for(provider)) as pipeline:
            require_semantic(pipeline)
            store = pipeline.store
            decision = await store.create_entry(
                "proj",
                "Adopt TypeScript for the frontend",
                "decision",
                "We migrate the frontend to TypeScript for safer refactors.",
                tags=["frontend", "typescript"],
            )
            research = await store.create_entry(
                "proj",
                "Frontend bundler comparison",
                "research",
                "Vite builds faster than Webpack for the frontend.",
            )
            await store.create_entry(
                "proj", "Database backups", "note", "Nightly snapshots to object storage."
            )
            await store.create_relation(decision.id, research.id)

            for entry in (await store.list_entries()).items:
                pipeline.engine.schedule_index(entry)
            await pipeline.engine.wait_for_background()
            assert pipeline.vector_index.count() == 3

            results = await pipeline.engine.search("typescript frontend")
            assert results[0].entry.id == decision.id
            assert results[0].score_breakdown.semantic > 0
            assert results[0].score_breakdown.keyword > 0

            context = await pipeline.retriever.retrieve(
                "typescript frontend", max_tokens=500, include_related=True
            )
            ids = [item.id for item in context.items]
            assert ids[0] == decision.id
            assert research.id in ids
            assert context.total_tokens_estimate <= 500

            markdown = format_for_llm(context)
            assert markdown.startswith("## Adopt TypeScript for the frontend [decision]")

    @pytest.mark.asyncio
    async def test_reindex_after_dimension_change(self, config, make_provider):
        async with open_pipeline(config, service_for(make_provider(dimensions=32))) as pipeline:
            require_semantic(pipeline)
            for i in range(5):
                await pipeline.store.create_entry("proj", f"Entry {i}", "note", f"Body {i}")
            assert await pipeline.engine.reindex_all() == 5

        async with open_pipeline(config, service_for(make_provider(dimensions=64))) as pipeline:
            assert pipeline.vector_index.requires_reindex is True
            assert pipeline.vector_index.count() == 0

            assert await pipeline.engine.index_missing() == 5
            assert pipeline.vector_index.count() == 5

        async with open_pipeline(config, service_for(make_provider(dimensions=64))) as pipeline:
            assert pipeline.vector_index.requires_reindex is False
            assert await pipeline.engine.index_missing() == 0

    @pytest.mark.asyncio
    async def test_no_provider_degrades_to_keyword(self, config, make_provider, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        unavailable = make_provider(available=False)

        async with open_pipeline(config, service_for(unavailable, name="auto")) as pipeline:
            assert pipeline.embedding_service is None
            assert pipeline.vector_index is None
            assert pipeline.semantic_enabled is False

            await pipeline.store.create_entry(
                "proj", "Incident review", "note", "Root cause was a stale cache."
            )
            assert await pipeline.engine.reindex_all() == 0

            with pytest.warns(UserWarning):
                results = await pipeline.engine.search("stale cache", mode="semantic")
            assert [r.entry.title for r in results] == ["Incident review"]

            context = await pipeline.retriever.retrieve("stale cache")
            assert [item.title for item in context.items] == ["Incident review"]
            assert '<knowledge_entries count="1">' in format_for_llm(context, "xml")

    @pytest.mark.asyncio
    async def test_store_and_provider_closed_on_exit(self, config, make_provider):
        provider = make_provider()
        async with open_pipeline(config, service_for(provider)) as pipeline:
            store = pipeline.store
            assert provider.close_calls == 0

        assert provider.close_calls == 1

        with pytest.raises(StorageError, match="not initialized"):
            _ = store.connection

    @pytest.mark.asyncio
    async def test_configured_limits_reach_engine_and_retriever(self, tmp_path, make_provider):
        config = KortexConfig(
            storage=StorageSettings(database_path=tmp_path / "limits.db"),
            search=SearchSettings(default_limit=3),
            context=ContextSettings(max_tokens=900, max_items=2),
        )

        async with open_pipeline(config, service_for(make_provider())) as pipeline:
            for i in range(5):
                await pipeline.store.create_entry("proj", f"Runbook {i}", "note", "deploy steps")

            assert len(await pipeline.engine.search("deploy", mode="keyword")) == 3
            context = await pipeline.retriever.retrieve("deploy")
            assert len(context.items) == 2
