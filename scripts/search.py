#!/usr/bin/env python
"""Search the knowledge base, or assemble LLM context for a query.

Usage:
    python scripts/search.py "sqlite vs postgres"
    python scripts/search.py "auth flow" --mode keyword --limit 5
    python scripts/search.py "auth flow" --context --format xml --max-tokens 2000
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import click
from loguru import logger

from kortex.config import load_config
from kortex.context import format_for_llm
from kortex.models import EntryFilters
from kortex.pipeline import open_pipeline

logger.remove()
logger.add(sys.stderr, level="WARNING", format="<level>{message}</level>")


async def run(
    query: str,
    mode: str,
    limit: int | None,
    project: str | None,
    context: bool,
    output_format: str,
    max_tokens: int | None,
    include_related: bool,
) -> None:
    config = load_config("default")
    filters = EntryFilters(project_id=project) if project else None

    async with open_pipeline(config) as pipeline:
        if context:
            result = await pipeline.retriever.retrieve(
                query,
                max_tokens=max_tokens,
                max_items=limit,
                filters=filters,
                include_related=include_related,
            )
            click.echo(format_for_llm(result, output_format))
            click.echo(
                f"\n~{result.total_tokens_estimate} tokens"
                + (" (truncated)" if result.truncated else ""),
                err=True,
            )
            return

        results = await pipeline.engine.search(query, mode=mode, filters=filters, limit=limit)
        if not results:
            click.echo("No results found.")
            return

        for i, r in enumerate(results, 1):
            breakdown = r.score_breakdown
            click.echo(
                f"{i:2d}. [{r.score:.3f}] {r.entry.title} ({r.entry.type}, {r.entry.id})  "
                f"semantic={breakdown.semantic:.3f} keyword={breakdown.keyword:.3f}"
            )


@click.command()
@click.argument("query")
@click.option("--mode", type=click.Choice(["hybrid", "semantic", "keyword"]), default="hybrid")
@click.option("--limit", type=int, help="Result count (defaults to search.default_limit)")
@click.option("--project", help="Restrict to one project id")
@click.option("--context", is_flag=True, help="Assemble LLM context instead of listing hits")
@click.option(
    "--format", "output_format", type=click.Choice(["markdown", "xml"]), default="markdown"
)
@click.option("--max-tokens", type=int, help="Token budget for --context (context.max_tokens)")
@click.option("--include-related", is_flag=True, help="Pull related entries into --context")
def main(
    query: str,
    mode: str,
    limit: int | None,
    project: str | None,
    context: bool,
    output_format: str,
    max_tokens: int | None,
    include_related: bool,
) -> None:
    """Search entries with hybrid, semantic or keyword ranking."""
    asyncio.run(
        run(query, mode, limit, project, context, output_format, max_tokens, include_related)
    )


if __name__ == "__main__":
    main()
