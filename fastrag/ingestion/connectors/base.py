"""Abstract connector contract shared by file, database and API sources."""

from __future__ import annotations

import hashlib
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Tuple

from ...app_logging import SYNC_LOGGER_NAME
from ...errors import DataSourceError, ValidationError, classify_error
from ..models import (
    ConnectorMetrics,
    Content,
    DataSource,
    DataSourceHealth,
    SourceConfigBase,
    SourceStatus,
    SourceType,
    SyncResult,
    utcnow,
)
from ..retry import RetryGuard

sync_logger = logging.getLogger(SYNC_LOGGER_NAME)


class SourceConnector(ABC):
    """Lifecycle, sync bookkeeping and health reporting for one data source.

    Subclasses implement connection handling plus :meth:`_collect`, which
    returns the content gathered for a sync pass along with per-item error
    messages. :meth:`sync` turns that into a :class:`SyncResult`, tracking
    which ids are new, changed or gone since the previous pass.
    """

    source_type: SourceType
    config_type: type[SourceConfigBase] = SourceConfigBase

    def __init__(
        self,
        data_source: DataSource,
        *,
        guard: RetryGuard | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if data_source.type is not self.source_type or not isinstance(
            data_source.config, self.config_type
        ):
            raise ValidationError(
                f"{type(self).__name__} cannot handle {data_source.type.value} sources",
                data_source.id,
            )
        self._data_source = data_source
        self.logger = logger or logging.getLogger(
            f"fastrag.connectors.{self.source_type.value}"
        )
        self.guard = guard or RetryGuard(data_source.id, data_source.config)
        self._connected = False
        self._last_health_check: DataSourceHealth | None = None
        self._health_error_count = 0
        self._known_hashes: Dict[str, str] = {}
        self.last_synced: List[Content] = []

    # ---- Properties ----

    @property
    def data_source(self) -> DataSource:
        return self._data_source

    @property
    def source_id(self) -> str:
        return self._data_source.id

    @property
    def config(self) -> Any:
        return self._data_source.config

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def last_health_check(self) -> DataSourceHealth | None:
        return self._last_health_check

    # ---- Helpers ----

    def _log_context(self, **extra: Any) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "source_name": self._data_source.name,
            "source_type": self.source_type.value,
            **extra,
        }

    def _update_source(self, **changes: Any) -> None:
        self._data_source = self._data_source.model_copy(update=changes)

    def _mark_connected(self) -> None:
        self._connected = True
        self._update_source(status=SourceStatus.ACTIVE, error_message=None)
        self.logger.info("Connected to data source", extra=self._log_context())

    def _mark_disconnected(self) -> None:
        self._connected = False
        self._update_source(status=SourceStatus.INACTIVE)
        self.logger.info("Disconnected from data source", extra=self._log_context())

    @staticmethod
    def _fingerprint(content: Content) -> str:
        digest = hashlib.sha256()
        digest.update(content.title.encode("utf-8"))
        digest.update(b"\x00")
        digest.update(content.text.encode("utf-8"))
        return digest.hexdigest()

    def _track(self, contents: List[Content], *, full: bool) -> Tuple[int, int, int]:
        """Return ``(added, updated, deleted)`` counts and remember the pass."""

        added = updated = 0
        seen: Dict[str, str] = {}
        for content in contents:
            fingerprint = self._fingerprint(content)
            seen[content.id] = fingerprint
            previous = self._known_hashes.get(content.id)
            if previous is None:
                added += 1
            elif previous != fingerprint:
                updated += 1

        deleted = 0
        if full:
            gone = self._known_hashes.keys() - seen.keys()
            deleted = len(gone)
            self._known_hashes = seen
        else:
            self._known_hashes.update(seen)
        return added, updated, deleted

    # ---- Contract ----

    @abstractmethod
    async def connect(self) -> None:
        """Make the source ready; raise a :class:`DataSourceError` on failure."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Release resources; safe to call when not connected."""

    @abstractmethod
    async def validate_connection(self) -> bool:
        """Return whether the source is reachable; never raises."""

    @abstractmethod
    async def get_content(self, last_sync: datetime | None = None) -> List[Content]:
        """Return content, limited to items changed after ``last_sync`` if given."""

    @abstractmethod
    async def _collect(self, incremental: bool) -> Tuple[List[Content], List[str]]:
        """Gather content for a sync pass plus per-item error messages."""

    # ---- Public API ----

    async def sync(self, incremental: bool = False) -> SyncResult:
        """Run a full or incremental pass; errors are reported, never raised."""

        started = time.perf_counter()
        result = SyncResult()
        self._update_source(status=SourceStatus.SYNCING)
        mode = "incremental" if incremental else "full"
        self.logger.info("Sync started", extra=self._log_context(mode=mode))

        try:
            if not self._connected:
                await self.connect()
            contents, errors = await self._collect(incremental)
            self.last_synced = contents
            added, updated, deleted = self._track(contents, full=not incremental)
            result.documents_processed = len(contents)
            result.documents_added = added
            result.documents_updated = updated
            result.documents_deleted = deleted
            result.errors.extend(errors)
            result.success = not errors
            self._update_source(
                status=SourceStatus.ACTIVE,
                last_sync=utcnow(),
                document_count=len(self._known_hashes),
                error_message=errors[0] if errors else None,
            )
        except Exception as exc:
            error = classify_error(exc, self.source_id)
            self.last_synced = []
            result.success = False
            result.errors.append(error.message)
            self._update_source(status=SourceStatus.ERROR, error_message=error.message)
            self.logger.error(
                "Sync failed",
                extra=self._log_context(mode=mode, code=error.code, error=error.message),
            )

        result.duration = (time.perf_counter() - started) * 1000
        sync_logger.info(
            "Sync finished",
            extra=self._log_context(mode=mode, **result.model_dump(mode="json")),
        )
        return result

    async def health_check(self) -> DataSourceHealth:
        """Check the source once under the guard's deadline."""

        started = time.perf_counter()
        last_error: str | None = None
        try:
            healthy = await self.guard.run(
                self.validate_connection, max_attempts=1, description="health check"
            )
            if not healthy:
                last_error = "connection validation failed"
        except DataSourceError as exc:
            healthy = False
            last_error = exc.message
        if not healthy:
            self._health_error_count += 1

        health = DataSourceHealth(
            source_id=self.source_id,
            is_healthy=healthy,
            last_check=utcnow(),
            response_time=(time.perf_counter() - started) * 1000,
            error_count=self._health_error_count,
            last_error=last_error,
        )
        self._last_health_check = health
        if not healthy:
            self.logger.warning(
                "Health check failed", extra=self._log_context(error=last_error)
            )
        return health

    def get_metrics(self) -> ConnectorMetrics:
        return self.guard.get_metrics()

    def reset_metrics(self) -> None:
        self.guard.reset_metrics()


__all__ = ["SourceConnector"]
