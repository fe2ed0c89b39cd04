"""Error taxonomy shared by connectors and the indexing pipeline.

Every error carries a ``retryable`` flag which :class:`~fastrag.ingestion.retry.RetryGuard`
consults before re-attempting an operation. Connection and timeout errors
also subclass the matching builtin so callers may catch either.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any


class DataSourceError(Exception):
    """Base class for failures raised while talking to a data source."""

    def __init__(
        self,
        message: str,
        code: str,
        source_id: str | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.source_id = source_id
        self.retryable = retryable
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "source_id": self.source_id,
            "retryable": self.retryable,
            "timestamp": self.timestamp.isoformat(),
        }


class SourceConnectionError(DataSourceError, ConnectionError):
    def __init__(self, message: str, source_id: str | None = None) -> None:
        super().__init__(message, "CONNECTION_ERROR", source_id, True)


class AuthenticationError(DataSourceError):
    def __init__(self, message: str, source_id: str | None = None) -> None:
        super().__init__(message, "AUTHENTICATION_ERROR", source_id, False)


class ValidationError(DataSourceError, ValueError):
    """Invalid configuration or schema; never retried."""

    def __init__(self, message: str, source_id: str | None = None) -> None:
        super().__init__(message, "VALIDATION_ERROR", source_id, False)


class SourceTimeoutError(DataSourceError, TimeoutError):
    def __init__(self, message: str, source_id: str | None = None) -> None:
        super().__init__(message, "TIMEOUT_ERROR", source_id, True)


class RateLimitError(DataSourceError):
    """Upstream throttling; ``retry_after`` is a hint in seconds."""

    def __init__(
        self,
        message: str,
        source_id: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, "RATE_LIMIT_ERROR", source_id, True)
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["retry_after"] = self.retry_after
        return payload


class ParseError(DataSourceError):
    """A single item (file, record) could not be parsed."""

    def __init__(self, message: str, source_id: str | None = None) -> None:
        super().__init__(message, "PARSE_ERROR", source_id, False)


class MaxRetriesExceededError(DataSourceError):
    """Raised once the retry budget is spent; chained to the last failure."""

    def __init__(
        self,
        message: str,
        source_id: str | None = None,
        last_error: BaseException | None = None,
    ) -> None:
        super().__init__(message, "MAX_RETRIES_EXCEEDED", source_id, False)
        self.last_error = last_error


_TIMEOUT_MARKERS = ("timeout", "timed out", "etimedout")
_CONNECTION_MARKERS = ("connection", "econnrefused", "econnreset", "unreachable")


def classify_error(exc: BaseException, source_id: str | None = None) -> DataSourceError:
    """Normalise ``exc`` into a :class:`DataSourceError` subtype."""

    if isinstance(exc, DataSourceError):
        return exc

    message = str(exc) or type(exc).__name__
    lowered = message.lower()
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)) or any(
        marker in lowered for marker in _TIMEOUT_MARKERS
    ):
        return SourceTimeoutError(message, source_id)
    if isinstance(exc, ConnectionError) or any(
        marker in lowered for marker in _CONNECTION_MARKERS
    ):
        return SourceConnectionError(message, source_id)
    return DataSourceError(message, "UNKNOWN_ERROR", source_id, False)


__all__ = [
    "AuthenticationError",
    "DataSourceError",
    "MaxRetriesExceededError",
    "ParseError",
    "RateLimitError",
    "SourceConnectionError",
    "SourceTimeoutError",
    "ValidationError",
    "classify_error",
]
