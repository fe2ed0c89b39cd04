"""Turn raw :class:`Content` into embedded, positioned chunks.

``IndexingService`` runs change detection, metadata extraction, chunking and
embedding for a single item or a batch, and keeps bookkeeping records in a
:class:`~fastrag.ingestion.cache.HashCache` so unchanged content is skipped on
the next pass.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from typing import Any, Dict, Iterable, List, Sequence

from ..config import IndexingConfig
from ..errors import ValidationError
from .cache import HashCache, MemoryHashCache
from .chunking import ChunkingStrategy, default_strategies
from .embedding import Embedder
from .metadata import MetadataExtractor
from .models import (
    BatchIndexingResult,
    ChangeType,
    ChunkMetadata,
    Content,
    ContentChange,
    ContentChunk,
    IndexedContent,
    IndexingResult,
    IndexingStatus,
)

logger = logging.getLogger(__name__)

CACHE_TTL = 24 * 60 * 60  # seconds
DEFAULT_STRATEGY = "sliding-window"


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class IndexingService:
    def __init__(
        self,
        config: IndexingConfig | None = None,
        embedder: Embedder | None = None,
        cache: HashCache | None = None,
        *,
        extractor: MetadataExtractor | None = None,
        strategies: Dict[str, ChunkingStrategy] | None = None,
    ) -> None:
        if embedder is None:
            raise ValueError("IndexingService requires an embedder")
        self.config = config or IndexingConfig()
        self.embedder = embedder
        self.cache: HashCache = cache if cache is not None else MemoryHashCache()
        self.extractor = extractor or MetadataExtractor()
        self._strategies = dict(strategies or default_strategies())

    # ---- Helpers ----

    @staticmethod
    def _hash_key(content_id: str) -> str:
        return f"content_hash:{content_id}"

    @staticmethod
    def _indexed_key(content_id: str) -> str:
        return f"indexed_content:{content_id}"

    @staticmethod
    def _change_key(content_id: str, timestamp_ms: int) -> str:
        return f"content_change:{content_id}:{timestamp_ms}"

    async def _has_changed(self, content: Content, digest: str) -> bool:
        try:
            stored = await self.cache.get(self._hash_key(content.id))
        except Exception as exc:
            logger.warning(
                "Hash cache lookup failed, reindexing",
                extra={"content_id": content.id, "error": str(exc)},
            )
            return True
        return stored != digest

    def _extract_metadata(self, content: Content) -> Dict[str, Any]:
        if not self.config.enable_metadata_extraction:
            return dict(content.metadata)
        try:
            return self.extractor.extract(content.text, content.metadata)
        except Exception as exc:
            logger.warning(
                "Metadata extraction failed",
                extra={"content_id": content.id, "error": str(exc)},
            )
            return dict(content.metadata)

    async def _store_indexing_metadata(self, content: Content, digest: str) -> None:
        record = IndexedContent(
            content_id=content.id,
            source_id=content.source_id,
            version=content.version,
        )
        await self.cache.set(self._hash_key(content.id), digest, CACHE_TTL)
        await self.cache.set(
            self._indexed_key(content.id), record.model_dump(mode="json"), CACHE_TTL
        )

    # ---- Public API ----

    def get_available_strategies(self) -> List[str]:
        return list(self._strategies)

    def get_config(self) -> IndexingConfig:
        return self.config

    async def index_content(
        self, content: Content, strategy: str = DEFAULT_STRATEGY
    ) -> IndexingResult:
        """Index one item; failures are reported in the result, never raised."""

        started = time.perf_counter()
        errors: List[str] = []
        try:
            digest = content_hash(content.text)
            if not await self._has_changed(content, digest):
                return IndexingResult(
                    content_id=content.id,
                    chunks_created=len(content.chunks),
                    embeddings_generated=0,
                    processing_time=_elapsed_ms(started),
                    status=IndexingStatus.SUCCESS,
                )

            metadata = self._extract_metadata(content)

            chunker = self._strategies.get(strategy)
            if chunker is None:
                raise ValidationError(f"Unknown chunking strategy: {strategy}")
            text_chunks = chunker.chunk_text(content.text, self.config)

            vectors = (
                await self.embedder.embed_batch([c.text for c in text_chunks])
                if text_chunks
                else []
            )
            chunks: List[ContentChunk] = []
            for idx, text_chunk in enumerate(text_chunks):
                vector = vectors[idx] if idx < len(vectors) else None
                if not vector:
                    errors.append(f"Failed to generate embedding for chunk {idx}")
                    continue
                chunks.append(
                    ContentChunk(
                        text=text_chunk.text,
                        embedding=vector,
                        position=len(chunks),
                        metadata=ChunkMetadata(
                            start_index=text_chunk.start_index,
                            end_index=text_chunk.end_index,
                            chunk_size=text_chunk.chunk_size,
                            **text_chunk.metadata,
                        ),
                    )
                )

            embedding = await self.embedder.embed(content.text)
            indexed = content.next_version(
                metadata=metadata, embedding=embedding, chunks=chunks
            )
            await self._store_indexing_metadata(indexed, digest)
        except Exception as exc:
            logger.warning(
                "Indexing failed",
                extra={"content_id": content.id, "strategy": strategy, "error": str(exc)},
            )
            return IndexingResult(
                content_id=content.id,
                processing_time=_elapsed_ms(started),
                status=IndexingStatus.FAILED,
                errors=[str(exc) or type(exc).__name__],
            )

        status = IndexingStatus.PARTIAL if errors else IndexingStatus.SUCCESS
        logger.debug(
            "Indexed content",
            extra={
                "content_id": content.id,
                "chunks": len(chunks),
                "version": indexed.version,
                "status": status.value,
            },
        )
        return IndexingResult(
            content_id=content.id,
            chunks_created=len(chunks),
            embeddings_generated=len(chunks) + 1,
            processing_time=_elapsed_ms(started),
            status=status,
            errors=errors,
            content=indexed,
        )

    async def batch_index_content(
        self, contents: Sequence[Content], strategy: str = DEFAULT_STRATEGY
    ) -> BatchIndexingResult:
        """Index ``contents`` in groups of ``batch_size``.

        Items in a group run concurrently, at most ``concurrency`` at a time;
        each group is joined before the next one starts.
        """

        started = time.perf_counter()
        semaphore = asyncio.Semaphore(self.config.concurrency)
        results: List[IndexingResult] = []

        async def _bounded(item: Content) -> IndexingResult:
            async with semaphore:
                return await self.index_content(item, strategy)

        batch_size = self.config.batch_size
        for offset in range(0, len(contents), batch_size):
            group = contents[offset : offset + batch_size]
            outcomes = await asyncio.gather(
                *(_bounded(item) for item in group), return_exceptions=True
            )
            for item, outcome in zip(group, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    outcome = IndexingResult(
                        content_id=item.id,
                        status=IndexingStatus.FAILED,
                        errors=[str(outcome) or type(outcome).__name__],
                    )
                results.append(outcome)

        failed = sum(1 for r in results if r.status is IndexingStatus.FAILED)
        return BatchIndexingResult(
            total_processed=len(contents),
            successful=len(results) - failed,
            failed=failed,
            results=results,
            total_processing_time=_elapsed_ms(started),
        )

    async def remove_from_index(self, content_id: str) -> int:
        change_keys = await self.cache.keys(f"content_change:{content_id}:*")
        return await self.cache.delete(
            self._hash_key(content_id), self._indexed_key(content_id), *change_keys
        )

    async def update_index(
        self, source_id: str, changes: Iterable[ContentChange]
    ) -> BatchIndexingResult:
        """Record created/updated changes and purge deleted content."""

        started = time.perf_counter()
        results: List[IndexingResult] = []
        changes = list(changes)

        for change in changes:
            try:
                if change.change_type is ChangeType.DELETED:
                    await self.remove_from_index(change.content_id)
                else:
                    key = self._change_key(
                        change.content_id, int(change.timestamp.timestamp() * 1000)
                    )
                    await self.cache.set(
                        key,
                        {"source_id": source_id, **change.model_dump(mode="json")},
                        CACHE_TTL,
                    )
                results.append(
                    IndexingResult(
                        content_id=change.content_id, status=IndexingStatus.SUCCESS
                    )
                )
            except Exception as exc:
                logger.warning(
                    "Failed to apply content change",
                    extra={
                        "source_id": source_id,
                        "content_id": change.content_id,
                        "change_type": change.change_type.value,
                        "error": str(exc),
                    },
                )
                results.append(
                    IndexingResult(
                        content_id=change.content_id,
                        status=IndexingStatus.FAILED,
                        errors=[str(exc) or type(exc).__name__],
                    )
                )

        failed = sum(1 for r in results if r.status is IndexingStatus.FAILED)
        return BatchIndexingResult(
            total_processed=len(changes),
            successful=len(results) - failed,
            failed=failed,
            results=results,
            total_processing_time=_elapsed_ms(started),
        )

    async def health_check(self) -> Dict[str, Any]:
        try:
            vector = await self.embedder.embed("health check")
        except Exception as exc:
            return {
                "status": "unhealthy",
                "details": {"embedder": type(self.embedder).__name__, "error": str(exc)},
            }
        return {
            "status": "healthy",
            "details": {
                "embedder": type(self.embedder).__name__,
                "dimension": len(vector),
                "strategies": self.get_available_strategies(),
                "config": self.config.model_dump(),
            },
        }


__all__ = ["CACHE_TTL", "DEFAULT_STRATEGY", "IndexingService", "content_hash"]
