"""Polling file watcher that diffs stat snapshots on an asyncio task."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Tuple

from .models import FileEventType, FileWatchEvent

logger = logging.getLogger(__name__)

Snapshot = Dict[str, Tuple[int, int]]  # path -> (mtime_ns, size)


def scan_files(root: Path, *, recursive: bool, accept: Callable[[Path], bool]) -> Snapshot:
    """Stat every accepted file under ``root`` (or ``root`` itself if a file)."""

    snapshot: Snapshot = {}
    if root.is_file():
        candidates = [root]
    elif root.is_dir():
        candidates = root.rglob("*") if recursive else root.iterdir()
    else:
        return snapshot
    for path in candidates:
        try:
            if not path.is_file() or not accept(path):
                continue
            stat = path.stat()
        except OSError:
            continue
        snapshot[str(path)] = (stat.st_mtime_ns, stat.st_size)
    return snapshot


def diff_snapshots(previous: Snapshot, current: Snapshot) -> List[FileWatchEvent]:
    events: List[FileWatchEvent] = []
    for path, signature in current.items():
        before = previous.get(path)
        if before is None:
            events.append(FileWatchEvent(event_type=FileEventType.ADD, file_path=path))
        elif before != signature:
            events.append(FileWatchEvent(event_type=FileEventType.CHANGE, file_path=path))
    for path in previous.keys() - current.keys():
        events.append(FileWatchEvent(event_type=FileEventType.UNLINK, file_path=path))
    return events


class PollingWatcher:
    """Re-scan ``root`` every ``interval`` seconds and hand diffs to ``sink``."""

    def __init__(
        self,
        root: Path,
        sink: Callable[[FileWatchEvent], Awaitable[None]],
        *,
        recursive: bool = False,
        interval: float = 1.0,
        accept: Callable[[Path], bool] = lambda _path: True,
    ) -> None:
        self.root = root
        self.recursive = recursive
        self.interval = interval
        self._sink = sink
        self._accept = accept
        self._snapshot: Snapshot = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _scan(self) -> Snapshot:
        return scan_files(self.root, recursive=self.recursive, accept=self._accept)

    async def start(self) -> bool:
        if self.running:
            return False
        self._snapshot = await asyncio.to_thread(self._scan)
        self._task = asyncio.create_task(
            self._run_loop(), name=f"fastrag-watch:{os.fspath(self.root)}"
        )
        logger.debug(
            "File watcher started",
            extra={"path": str(self.root), "files": len(self._snapshot)},
        )
        return True

    async def stop(self) -> bool:
        task = self._task
        self._task = None
        if task is None:
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("File watcher stopped", extra={"path": str(self.root)})
        return True

    async def poll(self) -> List[FileWatchEvent]:
        """Take one snapshot, publish the differences and return them."""

        current = await asyncio.to_thread(self._scan)
        events = diff_snapshots(self._snapshot, current)
        self._snapshot = current
        for event in events:
            await self._sink(event)
        return events

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.poll()
            except OSError as exc:
                logger.warning(
                    "File watcher scan failed",
                    extra={"path": str(self.root), "error": str(exc)},
                )


__all__ = ["PollingWatcher", "diff_snapshots", "scan_files"]
