"""Asyncio sync runner with per-source serialization and cancel support."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from uuid import UUID, uuid4

from .connectors.base import SourceConnector
from .models import SyncResult


class SyncRunner:
    """Schedule ``connector.sync()`` jobs as asyncio tasks.

    At most ``max_workers`` syncs run at once, and two jobs for the same
    source never overlap: each source has its own lock, so a second job waits
    for the first one to finish.
    """

    def __init__(self, max_workers: int = 4):
        self._slots = asyncio.Semaphore(max_workers)
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[UUID, asyncio.Task[SyncResult]] = {}

    def _lock_for(self, source_id: str) -> asyncio.Lock:
        lock = self._locks.get(source_id)
        if lock is None:
            lock = self._locks[source_id] = asyncio.Lock()
        return lock

    async def _run(self, connector: SourceConnector, incremental: bool) -> SyncResult:
        async with self._lock_for(connector.source_id):
            async with self._slots:
                return await connector.sync(incremental)

    def submit(
        self,
        connector: SourceConnector,
        *,
        incremental: bool = False,
        job_id: UUID | None = None,
    ) -> UUID:
        """Schedule a sync job; must be called with a running event loop."""
        job_id = job_id or uuid4()
        self._tasks[job_id] = asyncio.create_task(
            self._run(connector, incremental), name=f"fastrag-sync:{job_id}"
        )
        return job_id

    # Cancel job
    def cancel(self, job_id: UUID) -> bool:
        task = self._tasks.get(job_id)
        if task is None or task.done():
            return False
        return task.cancel()

    async def wait(self, job_id: UUID) -> SyncResult:
        task = self._tasks.get(job_id)
        if task is None:
            raise KeyError(f"Unknown sync job {job_id}")
        return await task

    def clear(self, job_id: UUID) -> None:
        """Remove references for a finished or cancelled job."""
        self._tasks.pop(job_id, None)

    def get(self, job_id: UUID) -> asyncio.Task[SyncResult] | None:
        return self._tasks.get(job_id)

    def list(self) -> Iterable[UUID]:
        return list(self._tasks)
