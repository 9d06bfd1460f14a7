#!/usr/bin/env python
"""Rebuild the vector index for semantic search.

Usage:
    python scripts/reindex.py
    python scripts/reindex.py --missing-only
    python scripts/reindex.py --provider ollama --database ~/.kortex/kortex.db
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import click
from loguru import logger

from kortex.config import load_config
from kortex.pipeline import open_pipeline

logger.remove()
logger.add(sys.stderr, level="INFO", format="<level>{message}</level>")


async def run(overrides: list[str], missing_only: bool) -> int:
    config = load_config("default", overrides=overrides)

    async with open_pipeline(config) as pipeline:
        if not pipeline.semantic_enabled:
            logger.error("Semantic search is not available; nothing to index.")
            logger.error("To enable it, install sentence-transformers, run Ollama with the")
            logger.error("configured model pulled, or set OPENAI_API_KEY.")
            return 1

        assert pipeline.embedding_service is not None
        logger.info(f"✓ Using {pipeline.embedding_service.provider_name} embeddings")

        def progress(done: int, total: int) -> None:
            click.echo(f"\r  Progress: {done}/{total} entries", nl=False, err=True)

        if missing_only:
            count = await pipeline.engine.index_missing(progress)
        else:
            count = await pipeline.engine.reindex_all(progress)

        click.echo("", err=True)
        logger.info(f"✓ Indexed {count} entries")
    return 0


@click.command()
@click.option("--provider", type=click.Choice(["auto", "local", "ollama", "openai"]))
@click.option("--database", type=click.Path(dir_okay=False), help="Record store path")
@click.option("--missing-only", is_flag=True, help="Only index entries without a vector")
def main(provider: str | None, database: str | None, missing_only: bool) -> None:
    """Rebuild the search index for semantic search."""
    overrides = []
    if provider:
        overrides.append(f"embedding.provider={provider}")
    if database:
        overrides.append(f"storage.database_path={database}")

    sys.exit(asyncio.run(run(overrides, missing_only)))


if __name__ == "__main__":
    main()
