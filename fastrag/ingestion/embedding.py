"""Embedding backends consumed by the indexing service.

The service only depends on the :class:`Embedder` protocol; the default
implementation runs a fastembed ``TextEmbedding`` model in a worker thread so
the event loop keeps serving other tasks while vectors are computed.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import List, Optional, Protocol, Sequence

from fastembed import TextEmbedding

from ..config import DEFAULT_EMBEDDING_MODEL

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...

    async def embed_batch(self, texts: Sequence[str]) -> List[Optional[List[float]]]:
        ...


class FastEmbedEmbedder:
    """:class:`Embedder` backed by fastembed, loading the model on first use."""

    def __init__(self, model_name: str = DEFAULT_EMBEDDING_MODEL) -> None:
        self.model_name = model_name
        self._model: TextEmbedding | None = None
        self._lock = threading.Lock()

    def _get_model(self) -> TextEmbedding:
        with self._lock:
            if self._model is None:
                logger.info("Loading embedding model %s", self.model_name)
                self._model = TextEmbedding(model_name=self.model_name)
            return self._model

    def _embed_sync(self, texts: List[str]) -> List[List[float]]:
        model = self._get_model()
        return [[float(x) for x in vector] for vector in model.embed(texts)]

    async def embed(self, text: str) -> List[float]:
        vectors = await asyncio.to_thread(self._embed_sync, [text])
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[Optional[List[float]]]:
        if not texts:
            return []
        vectors: List[Optional[List[float]]] = list(
            await asyncio.to_thread(self._embed_sync, list(texts))
        )
        # Pad so callers can match results to inputs by index.
        vectors.extend([None] * (len(texts) - len(vectors)))
        return vectors


__all__ = ["Embedder", "FastEmbedEmbedder"]
