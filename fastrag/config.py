"""Runtime configuration for the indexing pipeline and source definitions."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, List

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import ValidationError
from .ingestion.models import DataSource, load_data_source

DEFAULT_EMBEDDING_MODEL = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class IndexingConfig(BaseModel):
    """Chunking, batching and enrichment settings for ``IndexingService``."""

    chunk_size: int = Field(default=1000, ge=1)
    chunk_overlap: int = Field(default=200, ge=0)
    min_chunk_size: int = Field(default=100, ge=1)
    max_chunk_size: int = Field(default=2000, ge=1)
    enable_metadata_extraction: bool = True
    batch_size: int = Field(default=10, ge=1)
    concurrency: int = Field(default=3, ge=1)
    embedding_model: str = DEFAULT_EMBEDDING_MODEL

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_sizes(self) -> "IndexingConfig":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        if not self.min_chunk_size <= self.chunk_size <= self.max_chunk_size:
            raise ValueError("expected min_chunk_size <= chunk_size <= max_chunk_size")
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> "IndexingConfig":
        """Build a config from ``INDEXING_*`` variables; ``overrides`` win."""

        values: dict[str, Any] = {}
        int_vars = {
            "chunk_size": "INDEXING_CHUNK_SIZE",
            "chunk_overlap": "INDEXING_CHUNK_OVERLAP",
            "min_chunk_size": "INDEXING_MIN_CHUNK_SIZE",
            "max_chunk_size": "INDEXING_MAX_CHUNK_SIZE",
            "batch_size": "INDEXING_BATCH_SIZE",
            "concurrency": "INDEXING_CONCURRENCY",
        }
        for field, var in int_vars.items():
            raw = os.getenv(var)
            if raw:
                values[field] = int(raw)
        values["enable_metadata_extraction"] = _env_bool("INDEXING_ENABLE_METADATA", True)
        model = os.getenv("EMBEDDING_MODEL")
        if model:
            values["embedding_model"] = model
        values.update(overrides)
        return cls(**values)


def load_sources(path: str | Path) -> List[DataSource]:
    """Read a JSON file holding a list of sources (or ``{"sources": [...]}``)."""

    path = Path(path)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValidationError(f"invalid JSON in {path}: {exc}") from exc
    if isinstance(payload, dict):
        payload = payload.get("sources", [])
    if not isinstance(payload, list):
        raise ValidationError(f"{path} must contain a list of sources")
    return [load_data_source(item) for item in payload]


__all__ = ["DEFAULT_EMBEDDING_MODEL", "IndexingConfig", "load_sources"]
