"""Pydantic models and enums for data sources, content and sync results."""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..errors import ValidationError

SUPPORTED_FILE_TYPES = ("pdf", "txt", "md", "docx", "doc")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so comparisons never mix kinds."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _clamp(value: Any, low: float, high: float | None = None) -> Any:
    if value is None or isinstance(value, bool) or not isinstance(value, (int, float)):
        return value
    clamped = max(low, value)
    if high is not None:
        clamped = min(high, clamped)
    return type(value)(clamped)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SourceType(str, Enum):
    """Kinds of sources a connector can wrap."""

    FILE = "file"
    DATABASE = "database"
    API = "api"


class SourceStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    SYNCING = "syncing"


class PaginationType(str, Enum):
    OFFSET = "offset"
    CURSOR = "cursor"
    PAGE = "page"


class ChangeType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class IndexingStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class FileEventType(str, Enum):
    ADD = "add"
    CHANGE = "change"
    UNLINK = "unlink"


# ---------------------------------------------------------------------------
# Source configuration
# ---------------------------------------------------------------------------


class SourceCredentials(BaseModel):
    """Credentials payload; which fields matter depends on the source type."""

    username: str | None = None
    password: str | None = None
    api_key: str | None = None
    token: str | None = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("username", "api_key", "token", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value

    def format_values(self) -> Dict[str, str]:
        """Values usable as ``str.format`` arguments for header templates."""

        return {k: v for k, v in self.model_dump().items() if v}


class SourceConfigBase(BaseModel):
    """Options shared by every source type.

    Numeric options are clamped into range instead of rejected, so a config
    can never request an unbounded timeout or batch.
    """

    batch_size: int | None = None
    timeout: float | None = None  # seconds
    retry_attempts: int | None = None
    sync_interval: int | None = None  # seconds
    credentials: SourceCredentials | None = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("batch_size", mode="before")
    @classmethod
    def _clamp_batch_size(cls, value: Any) -> Any:
        return _clamp(value, 1, 10_000)

    @field_validator("timeout", mode="before")
    @classmethod
    def _clamp_timeout(cls, value: Any) -> Any:
        return _clamp(value, 1, 300)

    @field_validator("retry_attempts", mode="before")
    @classmethod
    def _clamp_retry_attempts(cls, value: Any) -> Any:
        return _clamp(value, 0, 10)

    @field_validator("sync_interval", mode="before")
    @classmethod
    def _clamp_sync_interval(cls, value: Any) -> Any:
        return _clamp(value, 60)


class FileSourceConfig(SourceConfigBase):
    file_path: str
    recursive: bool = False
    exclude_patterns: List[str] = Field(default_factory=list)
    file_types: List[str] = Field(default_factory=list)
    watch_for_changes: bool = False
    watch_interval: float = 1.0

    @field_validator("file_path", mode="before")
    @classmethod
    def _strip_path(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("file_types", mode="before")
    @classmethod
    def _normalise_types(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [str(v).lower().lstrip(".") for v in value]
        return value

    @field_validator("watch_interval", mode="before")
    @classmethod
    def _clamp_watch_interval(cls, value: Any) -> Any:
        return _clamp(value, 0.05, 3600)

    @model_validator(mode="after")
    def _check_file_config(self) -> "FileSourceConfig":
        if not self.file_path:
            raise ValueError("file path is required for file data source")
        invalid = [t for t in self.file_types if t not in SUPPORTED_FILE_TYPES]
        if invalid:
            raise ValueError(
                f"unsupported file types: {', '.join(invalid)}. "
                f"Supported types: {', '.join(SUPPORTED_FILE_TYPES)}"
            )
        return self


class DatabaseSourceConfig(SourceConfigBase):
    connection_string: str
    query: str | None = None
    table: str | None = None
    incremental_field: str | None = None
    pool_size: int = 5

    @field_validator("connection_string", "query", "table", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @field_validator("pool_size", mode="before")
    @classmethod
    def _clamp_pool_size(cls, value: Any) -> Any:
        return _clamp(value, 1, 50)

    @field_validator("table", "incremental_field")
    @classmethod
    def _identifier(cls, value: str | None) -> str | None:
        if value is not None and not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_.]*", value):
            raise ValueError(f"invalid identifier: {value!r}")
        return value

    @model_validator(mode="after")
    def _check_database_config(self) -> "DatabaseSourceConfig":
        if not self.connection_string or "://" not in self.connection_string:
            raise ValueError(
                "database connection string must include a scheme "
                "(e.g. postgresql://, sqlite:///)"
            )
        is_mongo = self.connection_string.lower().startswith("mongodb")
        if not self.query and not self.table and not is_mongo:
            raise ValueError("either query or table must be specified")
        creds = self.credentials
        if creds is None or not creds.username or not creds.password:
            raise ValueError("database credentials (username and password) are required")
        return self


class ApiPagination(BaseModel):
    type: PaginationType
    limit_param: str = "limit"
    offset_param: str = "offset"
    cursor_param: str = "cursor"
    page_param: str = "page"
    next_cursor_field: str | None = None
    start_page: int = 1

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_params(self) -> "ApiPagination":
        required = {
            PaginationType.OFFSET: self.offset_param,
            PaginationType.CURSOR: self.cursor_param,
            PaginationType.PAGE: self.page_param,
        }[self.type]
        if not required or not required.strip():
            raise ValueError(f"{self.type.value} pagination requires its parameter name")
        return self


class ApiSourceConfig(SourceConfigBase):
    api_endpoint: str
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    query_params: Dict[str, Any] = Field(default_factory=dict)
    body: Dict[str, Any] = Field(default_factory=dict)
    pagination: ApiPagination | None = None
    records_path: str | None = None
    since_param: str = "since"
    rate_limit: int = 10

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("rate_limit", mode="before")
    @classmethod
    def _clamp_rate_limit(cls, value: Any) -> Any:
        return _clamp(value, 1, 1000)

    @model_validator(mode="after")
    def _check_api_config(self) -> "ApiSourceConfig":
        parsed = urlparse(self.api_endpoint.strip())
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("invalid API endpoint URL format")
        if self.method not in {"GET", "POST"}:
            raise ValueError("method must be GET or POST")
        creds = self.credentials
        if creds is None or not (
            creds.api_key or creds.token or (creds.username and creds.password)
        ):
            raise ValueError(
                "API credentials are required (api_key, token, or username/password)"
            )
        return self


DataSourceConfig = Union[FileSourceConfig, DatabaseSourceConfig, ApiSourceConfig]

_CONFIG_TYPES: Dict[SourceType, type[SourceConfigBase]] = {
    SourceType.FILE: FileSourceConfig,
    SourceType.DATABASE: DatabaseSourceConfig,
    SourceType.API: ApiSourceConfig,
}


class DataSource(BaseModel):
    """Snapshot of a configured source and its sync bookkeeping."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    type: SourceType
    config: DataSourceConfig
    status: SourceStatus = SourceStatus.INACTIVE
    last_sync: datetime | None = None
    document_count: int = 0
    error_message: str | None = None
    metadata: Dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def _select_config(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        config = values.get("config")
        source_type = values.get("type")
        if isinstance(config, dict) and source_type is not None:
            config_cls = _CONFIG_TYPES[SourceType(source_type)]
            values = {**values, "config": config_cls(**config)}
        return values

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = value.strip()
        if not value or len(value) > 100:
            raise ValueError("name must be 1-100 characters")
        return value

    @field_validator("document_count", mode="before")
    @classmethod
    def _non_negative(cls, value: Any) -> Any:
        return _clamp(value, 0)

    @model_validator(mode="after")
    def _config_matches_type(self) -> "DataSource":
        expected = _CONFIG_TYPES[self.type]
        if not isinstance(self.config, expected):
            raise ValueError(
                f"{self.type.value} source requires {expected.__name__}, "
                f"got {type(self.config).__name__}"
            )
        return self


def load_data_source(payload: Dict[str, Any]) -> DataSource:
    """Build a :class:`DataSource`, surfacing schema problems as ``ValidationError``."""

    try:
        return DataSource(**payload)
    except pydantic.ValidationError as exc:
        messages = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'source'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ValidationError(
            f"data source validation failed: {messages}", payload.get("id")
        ) from exc


class DataSourceHealth(BaseModel):
    source_id: str
    is_healthy: bool
    last_check: datetime
    response_time: float | None = None  # milliseconds
    error_count: int = 0
    last_error: str | None = None


class ConnectorMetrics(BaseModel):
    total_queries: int = 0
    successful_queries: int = 0
    failed_queries: int = 0
    average_response_time: float = 0.0  # milliseconds
    last_query_time: datetime | None = None


class SyncResult(BaseModel):
    success: bool = False
    documents_processed: int = 0
    documents_added: int = 0
    documents_updated: int = 0
    documents_deleted: int = 0
    errors: List[str] = Field(default_factory=list)
    duration: float = 0.0  # milliseconds


class PaginationState(BaseModel):
    has_more: bool = True
    next_offset: int | None = None
    next_cursor: str | None = None
    next_page: int | None = None


class FileWatchEvent(BaseModel):
    event_type: FileEventType
    file_path: str
    timestamp: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------


class ChunkMetadata(BaseModel):
    """Span of a chunk within its content; extra keys are kept."""

    start_index: int = Field(ge=0)
    end_index: int = Field(ge=0)
    chunk_size: int = Field(ge=1)
    overlap: int = Field(default=0, ge=0)

    model_config = ConfigDict(extra="allow", frozen=True)

    @model_validator(mode="after")
    def _span_matches_size(self) -> "ChunkMetadata":
        if self.end_index - self.start_index != self.chunk_size:
            raise ValueError("end_index - start_index must equal chunk_size")
        return self


class ContentChunk(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    text: str = Field(min_length=1)
    embedding: List[float]
    position: int = Field(ge=0)
    metadata: ChunkMetadata

    model_config = ConfigDict(frozen=True)


class Content(BaseModel):
    """One normalised unit of ingested text.

    Instances are immutable; :meth:`next_version` returns the re-indexed copy.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_id: str
    title: str
    text: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    embedding: List[float] = Field(default_factory=list)
    chunks: List[ContentChunk] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utcnow)
    version: int = Field(default=1, ge=1)

    model_config = ConfigDict(frozen=True)

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("last_updated")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    def next_version(self, **changes: Any) -> "Content":
        now = utcnow()
        if now <= self.last_updated:
            now = self.last_updated + timedelta(microseconds=1)
        return self.model_copy(
            update={**changes, "version": self.version + 1, "last_updated": now}
        )


class ContentChange(BaseModel):
    content_id: str
    change_type: ChangeType
    timestamp: datetime = Field(default_factory=utcnow)
    previous_version: Optional[int] = None
    new_version: Optional[int] = None


class IndexedContent(BaseModel):
    content_id: str
    source_id: str
    vector_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    indexed_at: datetime = Field(default_factory=utcnow)
    status: str = "indexed"
    version: int = 1


class IndexingResult(BaseModel):
    content_id: str
    chunks_created: int = 0
    embeddings_generated: int = 0
    processing_time: float = 0.0  # milliseconds
    status: IndexingStatus
    errors: List[str] = Field(default_factory=list)
    content: Content | None = None


class BatchIndexingResult(BaseModel):
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    results: List[IndexingResult] = Field(default_factory=list)
    total_processing_time: float = 0.0  # milliseconds


__all__ = [
    "ApiPagination",
    "ApiSourceConfig",
    "BatchIndexingResult",
    "ChangeType",
    "ChunkMetadata",
    "ConnectorMetrics",
    "Content",
    "ContentChange",
    "ContentChunk",
    "DataSource",
    "DataSourceConfig",
    "DataSourceHealth",
    "DatabaseSourceConfig",
    "FileEventType",
    "FileSourceConfig",
    "FileWatchEvent",
    "IndexedContent",
    "IndexingResult",
    "IndexingStatus",
    "PaginationState",
    "PaginationType",
    "SUPPORTED_FILE_TYPES",
    "SourceConfigBase",
    "SourceCredentials",
    "SourceStatus",
    "SourceType",
    "SyncResult",
    "as_utc",
    "load_data_source",
    "utcnow",
]
