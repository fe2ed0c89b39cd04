"""Chunking strategies that split normalized text into positioned spans."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List

from ..config import IndexingConfig

_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]*")
_SENTENCE_END_RE = re.compile(r"[.!?]+")


@dataclass
class TextChunk:
    """A span ``text == source[start_index:end_index]`` plus strategy metadata."""

    text: str
    start_index: int
    end_index: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def chunk_size(self) -> int:
        return self.end_index - self.start_index


class ChunkingStrategy(ABC):
    name: str

    @abstractmethod
    def chunk_text(self, text: str, config: IndexingConfig) -> List[TextChunk]:
        """Split ``text`` into chunks honouring ``config`` sizes."""


class SlidingWindowStrategy(ChunkingStrategy):
    """Fixed windows of ``chunk_size`` advancing by ``chunk_size - overlap``."""

    name = "sliding-window"

    def chunk_text(self, text: str, config: IndexingConfig) -> List[TextChunk]:
        chunks: List[TextChunk] = []
        step = config.chunk_size - config.chunk_overlap
        length = len(text)
        for start in range(0, length, step):
            end = min(start + config.chunk_size, length)
            if end - start >= config.min_chunk_size:
                chunks.append(
                    TextChunk(
                        text=text[start:end],
                        start_index=start,
                        end_index=end,
                        metadata={"overlap": config.chunk_overlap if start > 0 else 0},
                    )
                )
            if end >= length:
                break
        return chunks


class SentenceStrategy(ChunkingStrategy):
    """Accumulate whole sentences up to ``chunk_size`` characters.

    Chunks are verbatim slices of the source; a sentence longer than
    ``max_chunk_size`` is cut into ``chunk_size`` pieces.
    """

    name = "sentence-based"

    @staticmethod
    def _sentences(text: str) -> List[tuple[int, int]]:
        spans: List[tuple[int, int]] = []
        for match in _SENTENCE_RE.finditer(text):
            raw = match.group()
            stripped = raw.strip()
            if not stripped or not stripped.strip(".!?"):
                continue
            start = match.start() + (len(raw) - len(raw.lstrip()))
            spans.append((start, start + len(stripped)))
        return spans

    def _emit(
        self,
        chunks: List[TextChunk],
        text: str,
        start: int,
        end: int,
        config: IndexingConfig,
    ) -> None:
        if end - start < config.min_chunk_size:
            return
        body = text[start:end]
        chunks.append(
            TextChunk(
                text=body,
                start_index=start,
                end_index=end,
                metadata={
                    "overlap": 0,
                    "sentence_count": len(_SENTENCE_END_RE.findall(body)),
                },
            )
        )

    def chunk_text(self, text: str, config: IndexingConfig) -> List[TextChunk]:
        chunks: List[TextChunk] = []
        current: tuple[int, int] | None = None

        for start, end in self._sentences(text):
            if end - start > config.max_chunk_size:
                if current is not None:
                    self._emit(chunks, text, current[0], current[1], config)
                    current = None
                for piece in range(start, end, config.chunk_size):
                    self._emit(
                        chunks, text, piece, min(piece + config.chunk_size, end), config
                    )
                continue
            if current is None:
                current = (start, end)
            elif end - current[0] > config.chunk_size:
                self._emit(chunks, text, current[0], current[1], config)
                current = (start, end)
            else:
                current = (current[0], end)

        if current is not None:
            self._emit(chunks, text, current[0], current[1], config)
        return chunks


def default_strategies() -> Dict[str, ChunkingStrategy]:
    strategies: List[ChunkingStrategy] = [SlidingWindowStrategy(), SentenceStrategy()]
    return {strategy.name: strategy for strategy in strategies}


__all__ = [
    "ChunkingStrategy",
    "SentenceStrategy",
    "SlidingWindowStrategy",
    "TextChunk",
    "default_strategies",
]
