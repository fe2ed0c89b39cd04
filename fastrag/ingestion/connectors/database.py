"""Connector that reads rows from relational databases and MongoDB collections.

SQL dialects go through a SQLAlchemy engine; MongoDB goes through pymongo.
Both share the same record-to-content mapping and the same incremental
high-water mark on ``incremental_field``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Sequence, Tuple
from urllib.parse import urlparse

import pymongo
import sqlalchemy as sa
from pymongo.errors import (
    ConnectionFailure,
    ExecutionTimeout,
    NetworkTimeout,
    PyMongoError,
    ServerSelectionTimeoutError,
)
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.exc import ArgumentError, DBAPIError, OperationalError, SQLAlchemyError

from ...errors import (
    AuthenticationError,
    DataSourceError,
    SourceConnectionError,
    SourceTimeoutError,
    ValidationError,
)
from ..models import Content, DatabaseSourceConfig, DataSource, SourceType, as_utc
from ..retry import RetryGuard
from .base import SourceConnector

DEFAULT_BATCH_SIZE = 1000
DEFAULT_COLLECTION = "documents"
DEFAULT_MONGO_DATABASE = "default"
MONGO_POOL_SIZE = 10
MONGO_MIN_POOL_SIZE = 2
MONGO_MAX_IDLE_MS = 30_000
ID_FIELDS = ("id", "_id", "uuid")
TEXT_FIELDS = ("content", "text", "body")
TITLE_FIELDS = ("title", "name", "subject")

# scheme -> SQLAlchemy driver name
SQL_DRIVERS = {
    "postgresql": "postgresql+psycopg",
    "postgres": "postgresql+psycopg",
    "mysql": "mysql",
    "sqlite": "sqlite",
}

_DRIVER_ERRORS = (SQLAlchemyError, PyMongoError)

MongoClientFactory = Callable[..., Any]


def detect_dialect(connection_string: str) -> str:
    scheme = connection_string.split("://", 1)[0].lower()
    base = scheme.split("+", 1)[0]
    if base in ("postgresql", "postgres"):
        return "postgresql"
    if base in ("mysql", "sqlite", "mongodb"):
        return base
    raise ValidationError(f"Unsupported database type in connection string: {scheme}")


def mongo_database_name(connection_string: str) -> str:
    path = urlparse(connection_string).path.lstrip("/")
    return path.split("/", 1)[0] or DEFAULT_MONGO_DATABASE


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return str(value)


class DatabaseConnector(SourceConnector):
    """Poll a table, query or collection, optionally incrementally on a monotonic field."""

    source_type = SourceType.DATABASE
    config_type = DatabaseSourceConfig

    def __init__(
        self,
        data_source: DataSource,
        *,
        guard: RetryGuard | None = None,
        logger: logging.Logger | None = None,
        mongo_client_factory: MongoClientFactory | None = None,
    ) -> None:
        super().__init__(data_source, guard=guard, logger=logger)
        config: DatabaseSourceConfig = self.config
        self.dialect = detect_dialect(config.connection_string)
        self._url: URL | None = None
        if self.dialect != "mongodb":
            self._url = self._resolve_url(config)
        self._engine: Engine | None = None
        self._mongo_factory = mongo_client_factory or pymongo.MongoClient
        self._mongo_client: Any = None
        self._mongo_db: Any = None
        self._cursor: Any = None
        self._batch_size = config.batch_size or DEFAULT_BATCH_SIZE

    @property
    def is_mongo(self) -> bool:
        return self.dialect == "mongodb"

    @property
    def collection_name(self) -> str:
        return self.config.table or DEFAULT_COLLECTION

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve_url(self, config: DatabaseSourceConfig) -> URL:
        try:
            url = make_url(config.connection_string)
        except ArgumentError as exc:
            raise ValidationError(
                f"Invalid database connection string: {exc}", self.source_id
            ) from exc
        scheme = url.drivername.split("+", 1)[0]
        if "+" not in url.drivername:
            url = url.set(drivername=SQL_DRIVERS[scheme])
        if self.dialect != "sqlite" and config.credentials is not None:
            url = url.set(
                username=config.credentials.username,
                password=config.credentials.password,
            )
        return url

    def _create_engine(self) -> Engine:
        kwargs: Dict[str, Any] = {"pool_pre_ping": True}
        if self.dialect != "sqlite":
            kwargs["pool_size"] = self.config.pool_size
            kwargs["pool_timeout"] = self.guard.timeout
        return sa.create_engine(self._url, **kwargs)

    def _create_mongo_client(self) -> Any:
        config: DatabaseSourceConfig = self.config
        timeout_ms = int(self.guard.timeout * 1000)
        kwargs: Dict[str, Any] = {
            "maxPoolSize": MONGO_POOL_SIZE,
            "minPoolSize": MONGO_MIN_POOL_SIZE,
            "maxIdleTimeMS": MONGO_MAX_IDLE_MS,
            "serverSelectionTimeoutMS": timeout_ms,
            "socketTimeoutMS": timeout_ms,
        }
        if config.credentials is not None and config.credentials.username:
            kwargs["username"] = config.credentials.username
            kwargs["password"] = config.credentials.password
        return self._mongo_factory(config.connection_string, **kwargs)

    def _classify(self, exc: BaseException) -> DataSourceError:
        if isinstance(exc, DataSourceError):
            return exc
        message = str(getattr(exc, "orig", None) or exc)
        lowered = message.lower()
        if "authentication" in lowered or "password" in lowered or "unauthorized" in lowered:
            return AuthenticationError(
                f"{self.dialect} authentication failed: {message}", self.source_id
            )
        if (
            isinstance(exc, (ServerSelectionTimeoutError, NetworkTimeout, ExecutionTimeout))
            or "timeout" in lowered
            or "timed out" in lowered
        ):
            return SourceTimeoutError(message, self.source_id)
        if isinstance(exc, (ImportError, ArgumentError)):
            return ValidationError(
                f"{self.dialect} driver unavailable: {message}", self.source_id
            )
        if isinstance(exc, (OperationalError, ConnectionError, ConnectionFailure)):
            return SourceConnectionError(
                f"Failed to connect to {self.dialect}: {message}", self.source_id
            )
        if isinstance(exc, (DBAPIError, PyMongoError)):
            return DataSourceError(
                f"Query failed: {message}", "QUERY_ERROR", self.source_id, retryable=False
            )
        return SourceConnectionError(
            f"Failed to connect to {self.dialect}: {message}", self.source_id
        )

    def _base_query(self) -> str:
        config: DatabaseSourceConfig = self.config
        if config.query:
            return config.query.strip().rstrip(";")
        return f"SELECT * FROM {config.table}"

    def build_query(self, cursor: Any = None) -> Tuple[str, Dict[str, Any]]:
        field = self.config.incremental_field
        sql = f"SELECT * FROM ({self._base_query()}) AS fastrag_src"
        params: Dict[str, Any] = {"limit": self._batch_size}
        if field and cursor is not None:
            sql += f" WHERE {field} > :cursor"
            params["cursor"] = cursor
        if field:
            sql += f" ORDER BY {field}"
        sql += " LIMIT :limit"
        return sql, params

    def build_filter(self, cursor: Any = None) -> Dict[str, Any]:
        """MongoDB counterpart of :meth:`build_query`."""

        field = self.config.incremental_field
        if field and cursor is not None:
            return {field: {"$gt": cursor}}
        return {}

    def _bind_timestamp(self, value: datetime) -> Any:
        value = as_utc(value)
        if self.dialect == "sqlite":
            return value.replace(tzinfo=None).isoformat(sep=" ")
        return value

    def _require_engine(self) -> Engine:
        if self._engine is None:
            raise SourceConnectionError("Database engine not initialized", self.source_id)
        return self._engine

    def _require_mongo(self) -> Any:
        if self._mongo_db is None:
            raise SourceConnectionError("MongoDB connection not initialized", self.source_id)
        return self._mongo_db

    def _fetch_sql_sync(self, cursor: Any) -> List[Dict[str, Any]]:
        sql, params = self.build_query(cursor)
        with self._require_engine().connect() as conn:
            result = conn.execute(sa.text(sql), params)
            return [dict(row) for row in result.mappings()]

    def _fetch_mongo_sync(self, cursor: Any) -> List[Dict[str, Any]]:
        collection = self._require_mongo()[self.collection_name]
        found = collection.find(self.build_filter(cursor))
        field = self.config.incremental_field
        if field:
            found = found.sort(field, pymongo.ASCENDING)
        return [dict(doc) for doc in found.limit(self._batch_size)]

    async def _fetch(self, cursor: Any = None) -> List[Dict[str, Any]]:
        fetch_sync = self._fetch_mongo_sync if self.is_mongo else self._fetch_sql_sync

        async def attempt() -> List[Dict[str, Any]]:
            try:
                return await asyncio.to_thread(fetch_sync, cursor)
            except _DRIVER_ERRORS as exc:
                raise self._classify(exc) from exc

        rows = await self.guard.run(attempt, description="database query")
        self.logger.debug(
            "Fetched database rows", extra=self._log_context(rows=len(rows), incremental=cursor is not None)
        )
        return rows

    def _high_water_mark(self, rows: Sequence[Dict[str, Any]]) -> Any:
        field = self.config.incremental_field
        values = [row[field] for row in rows if field and row.get(field) is not None]
        if not values:
            return self._cursor
        try:
            candidate = max(values)
        except TypeError:
            candidate = values[-1]
        if self._cursor is None:
            return candidate
        try:
            return candidate if candidate > self._cursor else self._cursor
        except TypeError:
            return candidate

    def row_to_content(self, row: Dict[str, Any]) -> Content | None:
        text_value = next(
            (row[f] for f in TEXT_FIELDS if row.get(f) not in (None, "")), None
        )
        if text_value is None or not str(text_value).strip():
            return None
        record_id = next((row[f] for f in ID_FIELDS if row.get(f) is not None), None)
        metadata = {str(k): _json_safe(v) for k, v in row.items()}
        if record_id is None:
            fingerprint = json.dumps(metadata, sort_keys=True)
            record_id = uuid.uuid5(uuid.NAMESPACE_URL, f"{self.source_id}:{fingerprint}")
        title_value = next((row[f] for f in TITLE_FIELDS if row.get(f)), None)
        metadata.update(
            {
                "source": self.dialect,
                "table": self.collection_name if self.is_mongo else self.config.table,
                "record_id": _json_safe(record_id),
                "created_at": _json_safe(row.get("created_at") or row.get("createdAt")),
                "modified_at": _json_safe(
                    row.get("updated_at") or row.get("updatedAt") or row.get("modified_at")
                ),
                "category": "database",
            }
        )
        if self.is_mongo:
            metadata["collection"] = self.collection_name
        return Content(
            id=str(_json_safe(record_id)),
            source_id=self.source_id,
            title=str(title_value) if title_value else f"Record {_json_safe(record_id)}",
            text=str(text_value),
            metadata=metadata,
        )

    def _rows_to_contents(
        self, rows: Sequence[Dict[str, Any]]
    ) -> Tuple[List[Content], List[str]]:
        contents: List[Content] = []
        errors: List[str] = []
        for row in rows:
            try:
                content = self.row_to_content(row)
            except (ValueError, TypeError) as exc:
                errors.append(f"Failed to map database record: {exc}")
                continue
            if content is not None:
                contents.append(content)
        return contents, errors

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def _connect_sql_sync(self) -> None:
        engine = self._create_engine()
        try:
            with engine.connect() as conn:
                conn.execute(sa.text("SELECT 1"))
        except Exception:
            engine.dispose()
            raise
        self._engine = engine

    def _connect_mongo_sync(self) -> None:
        client = self._create_mongo_client()
        try:
            database = client[mongo_database_name(self.config.connection_string)]
            database.command("ping")
        except Exception:
            client.close()
            raise
        self._mongo_client, self._mongo_db = client, database

    def _ping_sync(self) -> None:
        if self.is_mongo:
            self._require_mongo().command("ping")
            return
        with self._require_engine().connect() as conn:
            conn.execute(sa.text("SELECT 1"))

    async def _open(self) -> None:
        """One connection attempt; the caller decides about retries."""

        connect_sync = self._connect_mongo_sync if self.is_mongo else self._connect_sql_sync
        try:
            await asyncio.to_thread(connect_sync)
        except (*_DRIVER_ERRORS, ImportError) as exc:
            raise self._classify(exc) from exc

    async def connect(self) -> None:
        await self.guard.run(self._open, description="database connect")
        self._mark_connected()

    async def disconnect(self) -> None:
        engine, self._engine = self._engine, None
        if engine is not None:
            await asyncio.to_thread(engine.dispose)
        client, self._mongo_client, self._mongo_db = self._mongo_client, None, None
        if client is not None:
            await asyncio.to_thread(client.close)
        self._mark_disconnected()

    async def validate_connection(self) -> bool:
        """Ping the database, opening the connection first if needed."""

        try:
            if not self.is_connected:
                await self._open()
                self._mark_connected()
            await asyncio.to_thread(self._ping_sync)
        except _DRIVER_ERRORS as exc:
            self.logger.warning(
                "Database validation failed", extra=self._log_context(error=str(exc))
            )
            return False
        except DataSourceError as exc:
            self.logger.warning(
                "Database validation failed", extra=self._log_context(error=exc.message)
            )
            return False
        return True

    async def get_content(self, last_sync: datetime | None = None) -> List[Content]:
        if not self.is_connected:
            await self.connect()
        cursor = None
        if last_sync is not None:
            if self.config.incremental_field:
                cursor = self._bind_timestamp(last_sync)
            else:
                self.logger.debug(
                    "No incremental_field configured, ignoring last_sync",
                    extra=self._log_context(),
                )
        rows = await self._fetch(cursor)
        contents, errors = self._rows_to_contents(rows)
        for message in errors:
            self.logger.warning(message, extra=self._log_context())
        return contents

    async def _collect(self, incremental: bool) -> Tuple[List[Content], List[str]]:
        cursor = self._cursor if incremental else None
        rows = await self._fetch(cursor)
        self._cursor = self._high_water_mark(rows)
        return self._rows_to_contents(rows)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _count_sync(self) -> int:
        if self.is_mongo:
            return int(self._require_mongo()[self.collection_name].count_documents({}))
        with self._require_engine().connect() as conn:
            return int(
                conn.execute(sa.text(f"SELECT COUNT(*) FROM {self.config.table}")).scalar_one()
            )

    async def get_database_metadata(self) -> Dict[str, Any]:
        if not self.is_connected:
            await self.connect()
        config: DatabaseSourceConfig = self.config
        record_count = 0
        if config.table or self.is_mongo:
            try:
                record_count = await asyncio.to_thread(self._count_sync)
            except _DRIVER_ERRORS as exc:
                raise self._classify(exc) from exc
        last_sync = self.data_source.last_sync
        metadata = {
            "table_name": self.collection_name if self.is_mongo else config.table,
            "query": config.query,
            "record_count": record_count,
            "last_sync_timestamp": last_sync.isoformat() if last_sync else None,
            "incremental_cursor": _json_safe(self._cursor),
            "dialect": self.dialect,
        }
        if self.is_mongo:
            metadata["database"] = self._require_mongo().name
        return metadata

    def get_pool_stats(self) -> Dict[str, int]:
        if self._engine is None:
            return {"size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}
        pool = self._engine.pool

        def _stat(name: str) -> int:
            method = getattr(pool, name, None)
            return int(method()) if callable(method) else 0

        return {
            "size": _stat("size"),
            "checked_in": _stat("checkedin"),
            "checked_out": _stat("checkedout"),
            "overflow": _stat("overflow"),
        }


__all__ = ["DatabaseConnector", "SQL_DRIVERS", "detect_dialect", "mongo_database_name"]
