"""Connector for documents on the local filesystem."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Dict, List, Tuple

from ...errors import ParseError, SourceConnectionError
from ..models import (
    SUPPORTED_FILE_TYPES,
    Content,
    DataSource,
    FileEventType,
    FileSourceConfig,
    FileWatchEvent,
    SourceType,
    as_utc,
)
from ..parsers import READERS
from ..retry import RetryGuard
from ..watch import PollingWatcher, scan_files
from .base import SourceConnector

DEFAULT_QUEUE_SIZE = 1000


def compile_exclude_pattern(pattern: str) -> re.Pattern[str]:
    """Glob-ish pattern: ``*`` and ``?`` are wildcards, the rest is literal."""

    escaped = re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".")
    return re.compile(escaped)


class FileConnector(SourceConnector):
    """Discover, parse and optionally watch pdf/txt/md/docx/doc files."""

    source_type = SourceType.FILE
    config_type = FileSourceConfig

    def __init__(
        self,
        data_source: DataSource,
        *,
        guard: RetryGuard | None = None,
        logger: logging.Logger | None = None,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        super().__init__(data_source, guard=guard, logger=logger)
        config: FileSourceConfig = self.config
        self.root = Path(config.file_path).expanduser()
        self._file_types = set(config.file_types or SUPPORTED_FILE_TYPES)
        self._excludes = [compile_exclude_pattern(p) for p in config.exclude_patterns]
        self._file_timestamps: Dict[str, datetime] = {}
        self._events: asyncio.Queue[FileWatchEvent] = asyncio.Queue(maxsize=queue_size)
        self._watcher: PollingWatcher | None = None

    # ---- Helpers ----

    def is_supported(self, path: str | Path) -> bool:
        return Path(path).suffix.lower().lstrip(".") in self._file_types

    def is_excluded(self, path: str | Path) -> bool:
        text = str(path)
        return any(pattern.search(text) for pattern in self._excludes)

    def _accept(self, path: Path) -> bool:
        return self.is_supported(path) and not self.is_excluded(path)

    def _discover_sync(self) -> List[Path]:
        snapshot = scan_files(self.root, recursive=self.config.recursive, accept=self._accept)
        return sorted(Path(p) for p in snapshot)

    @staticmethod
    def _mtime(path: Path) -> datetime:
        return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)

    def content_id(self, path: Path) -> str:
        return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{self.source_id}:{path.resolve()}"))

    def _parse_sync(self, path: Path) -> Content:
        extension = path.suffix.lower().lstrip(".")
        reader = READERS.get(extension)
        if reader is None:
            raise ParseError(f"Unsupported file type: {extension}", self.source_id)
        try:
            text = reader(path)
            stat = path.stat()
        except Exception as exc:
            raise ParseError(f"Failed to parse {path}: {exc}", self.source_id) from exc
        return Content(
            id=self.content_id(path),
            source_id=self.source_id,
            title=path.stem,
            text=text,
            metadata={
                "file_type": extension,
                "file_name": path.name,
                "file_path": str(path),
                "file_size": stat.st_size,
                "modified_at": datetime.fromtimestamp(
                    stat.st_mtime, tz=timezone.utc
                ).isoformat(),
            },
        )

    # ---- Contract ----

    async def _check_access(self) -> None:
        if not await asyncio.to_thread(os.access, self.root, os.R_OK):
            raise SourceConnectionError(
                f"Cannot access file path: {self.root}", self.source_id
            )

    async def connect(self) -> None:
        await self.guard.run(self._check_access, description="file access check")
        if self.config.watch_for_changes:
            await self.start_watching()
        self._mark_connected()

    async def disconnect(self) -> None:
        await self.stop_watching()
        self._file_timestamps.clear()
        self._mark_disconnected()

    async def validate_connection(self) -> bool:
        try:
            return await asyncio.to_thread(os.access, self.root, os.R_OK)
        except OSError:
            return False

    async def discover_files(self) -> List[Path]:
        return await asyncio.to_thread(self._discover_sync)

    async def parse_file(self, path: Path) -> Content:
        """Parse one file; failures raise :class:`ParseError`."""

        return await asyncio.to_thread(self._parse_sync, path)

    async def get_content(self, last_sync: datetime | None = None) -> List[Content]:
        cutoff = as_utc(last_sync) if last_sync is not None else None
        contents: List[Content] = []
        files = await self.guard.run(self.discover_files, description="file discovery")
        for path in files:
            try:
                if cutoff is not None:
                    mtime = await asyncio.to_thread(self._mtime, path)
                    if mtime <= cutoff:
                        continue
                contents.append(await self.parse_file(path))
            except (ParseError, OSError) as exc:
                self.logger.warning(
                    "Skipping unreadable file",
                    extra=self._log_context(path=str(path), error=str(exc)),
                )
        return contents

    async def _collect(self, incremental: bool) -> Tuple[List[Content], List[str]]:
        files = await self.guard.run(self.discover_files, description="file discovery")
        self.logger.info(
            "Discovered files for processing", extra=self._log_context(count=len(files))
        )
        contents: List[Content] = []
        errors: List[str] = []
        for path in files:
            key = str(path)
            try:
                mtime = await asyncio.to_thread(self._mtime, path)
                previous = self._file_timestamps.get(key)
                if incremental and previous is not None and mtime <= previous:
                    continue
                contents.append(await self.parse_file(path))
                self._file_timestamps[key] = mtime
            except (ParseError, OSError) as exc:
                message = f"Failed to process file {path}: {exc}"
                errors.append(message)
                self.logger.error(message, extra=self._log_context(path=key))
        return contents, errors

    # ---- Change watching ----

    @property
    def watching(self) -> bool:
        return self._watcher is not None and self._watcher.running

    @property
    def watcher(self) -> PollingWatcher | None:
        return self._watcher

    async def start_watching(self) -> None:
        if self.watching:
            return
        self._watcher = PollingWatcher(
            self.root,
            self._dispatch,
            recursive=self.config.recursive,
            interval=self.config.watch_interval,
            accept=self._accept,
        )
        await self._watcher.start()
        self.logger.info("File watching started", extra=self._log_context(path=str(self.root)))

    async def stop_watching(self) -> None:
        watcher, self._watcher = self._watcher, None
        if watcher is not None:
            await watcher.stop()

    async def _refresh_timestamp(self, event: FileWatchEvent) -> None:
        if event.event_type is FileEventType.UNLINK:
            self._file_timestamps.pop(event.file_path, None)
            return
        try:
            self._file_timestamps[event.file_path] = await asyncio.to_thread(
                self._mtime, Path(event.file_path)
            )
        except OSError:
            self._file_timestamps.pop(event.file_path, None)

    async def _dispatch(self, event: FileWatchEvent) -> None:
        if self._events.full():
            dropped = self._events.get_nowait()
            self.logger.warning(
                "File event queue full, dropping oldest event",
                extra=self._log_context(
                    dropped_path=dropped.file_path,
                    dropped_event=dropped.event_type.value,
                ),
            )
        self._events.put_nowait(event)
        self.logger.debug(
            "File system event",
            extra=self._log_context(event=event.event_type.value, path=event.file_path),
        )
        await self._refresh_timestamp(event)

    async def trigger_file_change_event(
        self, file_path: str | Path, event_type: FileEventType | str
    ) -> bool:
        """Inject a synthetic event through the same filter as real ones."""

        path = Path(file_path)
        if not self._accept(path):
            return False
        await self._dispatch(
            FileWatchEvent(event_type=FileEventType(event_type), file_path=str(path))
        )
        return True

    def pending_events(self) -> int:
        return self._events.qsize()

    async def next_event(self, timeout: float | None = None) -> FileWatchEvent:
        if timeout is None:
            return await self._events.get()
        return await asyncio.wait_for(self._events.get(), timeout)

    async def events(self) -> AsyncIterator[FileWatchEvent]:
        """Yield watch events as they arrive until the consumer stops."""

        while True:
            yield await self._events.get()


__all__ = ["FileConnector", "compile_exclude_pattern"]
