"""Command line entry point: sync configured sources and index their content.

Sources are read from a JSON file (``--sources`` or ``SOURCES_FILE``). Each
source is synced through its connector, the fetched content is chunked and
embedded by :class:`fastrag.ingestion.indexing.IndexingService`, and a JSON
summary is printed to stdout.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, List

from dotenv import load_dotenv

from fastrag.app_logging import init_logging
from fastrag.config import IndexingConfig, load_sources
from fastrag.errors import DataSourceError
from fastrag.ingestion.connectors import create_connector
from fastrag.ingestion.embedding import Embedder, FastEmbedEmbedder
from fastrag.ingestion.indexing import DEFAULT_STRATEGY, IndexingService
from fastrag.ingestion.models import DataSource

log = logging.getLogger("fastrag.cli")


def build_embedder(config: IndexingConfig) -> Embedder:
    return FastEmbedEmbedder(config.embedding_model)


async def _health(sources: List[DataSource]) -> List[Dict[str, Any]]:
    summary: List[Dict[str, Any]] = []
    for source in sources:
        connector = create_connector(source)
        try:
            health = await connector.health_check()
        finally:
            await connector.disconnect()
        summary.append(
            {
                "source_id": source.id,
                "name": source.name,
                "type": source.type.value,
                "health": health.model_dump(mode="json"),
            }
        )
    return summary


async def _sync_and_index(
    sources: List[DataSource],
    service: IndexingService,
    *,
    full: bool,
    strategy: str,
) -> List[Dict[str, Any]]:
    summary: List[Dict[str, Any]] = []
    for source in sources:
        log.info("syncing %s (%s)", source.name, source.type.value)
        connector = create_connector(source)
        try:
            result = await connector.sync(incremental=not full)
            batch = await service.batch_index_content(connector.last_synced, strategy)
        finally:
            await connector.disconnect()
        summary.append(
            {
                "source_id": source.id,
                "name": source.name,
                "type": source.type.value,
                "sync": result.model_dump(mode="json"),
                "indexing": {
                    "total_processed": batch.total_processed,
                    "successful": batch.successful,
                    "failed": batch.failed,
                    "chunks_created": sum(r.chunks_created for r in batch.results),
                    "errors": [e for r in batch.results for e in r.errors],
                },
            }
        )
    return summary


def main(argv: list[str] | None = None) -> int:
    """Parse CLI arguments, run the requested work and print a JSON summary."""

    load_dotenv()
    parser = argparse.ArgumentParser(description="Sync data sources and index their content")
    parser.add_argument(
        "--sources",
        default=os.getenv("SOURCES_FILE"),
        help="JSON file with the data source definitions",
    )
    parser.add_argument(
        "--full",
        action="store_true",
        help="Run a full sync instead of an incremental one",
    )
    parser.add_argument(
        "--strategy",
        default=DEFAULT_STRATEGY,
        help="Chunking strategy (sliding-window or sentence-based)",
    )
    parser.add_argument(
        "--health",
        action="store_true",
        help="Only run health checks against the configured sources",
    )
    args = parser.parse_args(argv)

    if not args.sources:
        parser.error("--sources is required (or set SOURCES_FILE)")

    init_logging()

    try:
        sources = load_sources(args.sources)
    except (OSError, DataSourceError) as exc:
        log.error("could not load sources: %s", exc)
        print(json.dumps({"error": str(exc)}), file=sys.stderr)
        return 2

    if args.health:
        summary = asyncio.run(_health(sources))
        ok = all(item["health"]["is_healthy"] for item in summary)
    else:
        config = IndexingConfig.from_env()
        service = IndexingService(config, build_embedder(config))
        if args.strategy not in service.get_available_strategies():
            parser.error(
                f"unknown strategy {args.strategy!r}; choose from "
                f"{', '.join(service.get_available_strategies())}"
            )
        summary = asyncio.run(
            _sync_and_index(sources, service, full=args.full, strategy=args.strategy)
        )
        ok = all(item["sync"]["success"] for item in summary)

    print(json.dumps(summary, indent=2, default=str))
    return 0 if ok else 1


if __name__ == "__main__":  # pragma: no cover - CLI execution
    sys.exit(main())
