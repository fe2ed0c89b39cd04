import pathlib
import sys
from typing import Any, Dict, List, Optional, Sequence

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from fastrag.ingestion.models import DataSource, load_data_source
from fastrag.ingestion.retry import RetryGuard


class DummyEmbedder:
    """Deterministic embedder; texts listed in ``fail_on`` get no vector."""

    def __init__(self, dim: int = 4, fail_on: Sequence[str] = ()):
        self.dim = dim
        self.fail_on = set(fail_on)
        self.batch_calls: List[List[str]] = []
        self.single_calls: List[str] = []

    def _vector(self, text: str) -> List[float]:
        return [float(len(text) % 7 + i) for i in range(self.dim)]

    async def embed(self, text: str) -> List[float]:
        self.single_calls.append(text)
        return self._vector(text)

    async def embed_batch(self, texts: Sequence[str]) -> List[Optional[List[float]]]:
        self.batch_calls.append(list(texts))
        return [None if t in self.fail_on else self._vector(t) for t in texts]


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture()
def embedder() -> DummyEmbedder:
    return DummyEmbedder()


@pytest.fixture()
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def make_guard(recording_sleep):
    def _make(source: DataSource) -> RetryGuard:
        return RetryGuard(source.id, source.config, sleep=recording_sleep)

    return _make


def make_file_source(path: pathlib.Path, **config: Any) -> DataSource:
    return load_data_source(
        {
            "name": "docs",
            "type": "file",
            "config": {"file_path": str(path), **config},
        }
    )


def make_api_source(**config: Any) -> DataSource:
    payload: Dict[str, Any] = {
        "api_endpoint": "https://api.example.com/items",
        "credentials": {"token": "secret-token"},
    }
    payload.update(config)
    return load_data_source({"name": "api", "type": "api", "config": payload})


def make_database_source(url: str, **config: Any) -> DataSource:
    payload: Dict[str, Any] = {
        "connection_string": url,
        "table": "articles",
        "credentials": {"username": "reader", "password": "pw"},
    }
    payload.update(config)
    return load_data_source({"name": "db", "type": "database", "config": payload})
