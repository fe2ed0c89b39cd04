"""Connector for paginated JSON HTTP APIs."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import uuid
from datetime import date, datetime
from decimal import Decimal
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Tuple

import requests

from ...errors import (
    AuthenticationError,
    DataSourceError,
    ParseError,
    RateLimitError,
    SourceConnectionError,
    SourceTimeoutError,
)
from ..models import (
    ApiSourceConfig,
    Content,
    DataSource,
    PaginationState,
    PaginationType,
    SourceType,
    as_utc,
    utcnow,
)
from ..rate_limit import RateLimiter
from ..retry import RetryGuard
from .base import SourceConnector

DEFAULT_PAGE_SIZE = 100
MAX_REQUESTS = 100
TITLE_FIELDS = ("title", "name", "subject", "headline")
TEXT_FIELDS = ("content", "text", "body", "description", "message")
ID_FIELDS = ("id", "_id", "uuid")
RECORD_CONTAINERS = ("data", "items", "results")
CURSOR_FIELDS = ("next_cursor", "nextCursor", "cursor")


class APIConnector(SourceConnector):
    """Fetch records page by page and map them to :class:`Content`."""

    source_type = SourceType.API
    config_type = ApiSourceConfig

    def __init__(
        self,
        data_source: DataSource,
        *,
        session: requests.Session | None = None,
        rate_limiter: RateLimiter | None = None,
        guard: RetryGuard | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(data_source, guard=guard, logger=logger)
        config: ApiSourceConfig = self.config
        self.session = session or requests.Session()
        self.rate_limiter = rate_limiter or RateLimiter(config.rate_limit)
        self._endpoint = config.api_endpoint.strip()
        self._headers = self._prepare_headers(config.headers)
        self._page_size = config.batch_size or DEFAULT_PAGE_SIZE

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _prepare_headers(self, headers: Dict[str, str]) -> Dict[str, str]:
        prepared = {"Accept": "application/json"}
        credentials = self.config.credentials
        values = credentials.format_values() if credentials else {}
        for key, value in headers.items():
            try:
                prepared[key] = value.format(**values)
            except (KeyError, IndexError, ValueError):
                prepared[key] = value

        if credentials is not None:
            if credentials.api_key:
                prepared["X-API-Key"] = credentials.api_key
            elif credentials.token:
                prepared["Authorization"] = f"Bearer {credentials.token}"
            elif credentials.username and credentials.password:
                raw = f"{credentials.username}:{credentials.password}".encode("utf-8")
                prepared["Authorization"] = f"Basic {base64.b64encode(raw).decode('ascii')}"
        return prepared

    @classmethod
    def _json_safe(cls, value: Any) -> Any:
        if value is None or isinstance(value, (str, int, float, bool)):
            return value
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, Decimal):
            return float(value)
        if isinstance(value, dict):
            return {str(k): cls._json_safe(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [cls._json_safe(v) for v in value]
        return str(value)

    @staticmethod
    def _lookup(payload: Any, path: str | None) -> Any:
        if not path:
            return payload
        current = payload
        for part in path.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            elif isinstance(current, list):
                try:
                    index = int(part)
                except ValueError:
                    return None
                if 0 <= index < len(current):
                    current = current[index]
                else:
                    return None
            else:
                return None
        return current

    @staticmethod
    def _retry_after(response: Any) -> float | None:
        raw = (getattr(response, "headers", None) or {}).get("Retry-After")
        if not raw:
            return None
        try:
            return max(0.0, float(raw))
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            return None
        return max(0.0, (as_utc(when) - utcnow()).total_seconds())

    def build_request(
        self, state: PaginationState, last_sync: datetime | None = None
    ) -> Dict[str, Any]:
        config: ApiSourceConfig = self.config
        params = dict(config.query_params)
        pagination = config.pagination
        if pagination is not None:
            params[pagination.limit_param] = self._page_size
            if pagination.type is PaginationType.OFFSET and state.next_offset is not None:
                params[pagination.offset_param] = state.next_offset
            elif pagination.type is PaginationType.CURSOR and state.next_cursor:
                params[pagination.cursor_param] = state.next_cursor
            elif pagination.type is PaginationType.PAGE and state.next_page is not None:
                params[pagination.page_param] = state.next_page
        if last_sync is not None:
            params[config.since_param] = as_utc(last_sync).isoformat()

        request_kwargs: Dict[str, Any] = {
            "headers": self._headers,
            "params": params,
            "timeout": self.guard.timeout,
        }
        if config.method == "POST":
            request_kwargs["json"] = dict(config.body)
        return request_kwargs

    def _raise_for_status(self, response: Any) -> None:
        status = response.status_code
        reason = getattr(response, "reason", "") or ""
        if status in (401, 403):
            raise AuthenticationError(
                f"Authentication failed: {status} {reason}".strip(), self.source_id
            )
        if status == 429:
            raise RateLimitError(
                "Rate limit exceeded", self.source_id, self._retry_after(response)
            )
        if status >= 500:
            raise DataSourceError(
                f"Server error: {status} {reason}".strip(),
                "SERVER_ERROR",
                self.source_id,
                retryable=True,
            )
        if status >= 400:
            raise DataSourceError(
                f"HTTP error: {status} {reason}".strip(),
                "HTTP_ERROR",
                self.source_id,
                retryable=False,
            )

    async def _send(self, request_kwargs: Dict[str, Any]) -> Any:
        method = self.config.method
        self.logger.debug(
            "Making API request",
            extra=self._log_context(method=method, url=self._endpoint, params=request_kwargs["params"]),
        )
        try:
            response = await asyncio.to_thread(
                self.session.request, method, self._endpoint, **request_kwargs
            )
        except requests.Timeout as exc:
            raise SourceTimeoutError(f"Request timeout: {exc}", self.source_id) from exc
        except requests.ConnectionError as exc:
            raise SourceConnectionError(
                f"Connection failed: {exc}", self.source_id
            ) from exc
        self._raise_for_status(response)
        try:
            return response.json()
        except ValueError as exc:
            raise ParseError(
                f"API returned a non-JSON response: {exc}", self.source_id
            ) from exc

    async def _request(self, request_kwargs: Dict[str, Any]) -> Any:
        async def attempt() -> Any:
            await self.rate_limiter.acquire()
            return await self.guard.execute_with_timeout(lambda: self._send(request_kwargs))

        return await self.guard.execute(attempt, description="API request")

    def extract_records(self, payload: Any) -> List[Any]:
        """Locate the record list in a response body."""

        records_path = self.config.records_path
        if records_path:
            found = self._lookup(payload, records_path)
            if found is None:
                return []
            return found if isinstance(found, list) else [found]
        if isinstance(payload, list):
            return payload
        if isinstance(payload, dict):
            for key in RECORD_CONTAINERS:
                if isinstance(payload.get(key), list):
                    return payload[key]
        return [payload]

    def next_state(
        self, payload: Any, item_count: int, state: PaginationState
    ) -> PaginationState:
        """Advance the pagination state machine from one response."""

        pagination = self.config.pagination
        if pagination is None:
            return PaginationState(has_more=False)
        body = payload if isinstance(payload, dict) else {}
        full_page = item_count >= self._page_size

        if pagination.type is PaginationType.OFFSET:
            offset = state.next_offset or 0
            next_offset = offset + self._page_size
            total = body.get("total")
            if isinstance(total, (int, float)) and not isinstance(total, bool):
                has_more = next_offset < total
            else:
                has_more = full_page
            return PaginationState(has_more=has_more, next_offset=next_offset)

        if pagination.type is PaginationType.CURSOR:
            if pagination.next_cursor_field:
                cursor = self._lookup(body, pagination.next_cursor_field)
            else:
                cursor = next(
                    (body[field] for field in CURSOR_FIELDS if body.get(field)), None
                )
            cursor = str(cursor) if cursor not in (None, "") else None
            has_more = cursor is not None and cursor != state.next_cursor
            return PaginationState(has_more=has_more, next_cursor=cursor)

        page = body.get("page")
        if not isinstance(page, int) or isinstance(page, bool):
            page = state.next_page if state.next_page is not None else pagination.start_page
        total_pages = body.get("total_pages")
        if isinstance(total_pages, int) and not isinstance(total_pages, bool):
            has_more = page < total_pages
        else:
            has_more = full_page
        return PaginationState(has_more=has_more, next_page=page + 1)

    def record_to_content(self, record: Any) -> Content | None:
        """Map one API record to content; records without text or title yield ``None``."""

        if not isinstance(record, dict):
            return None
        text = next(
            (record[f] for f in TEXT_FIELDS if isinstance(record.get(f), str) and record[f]),
            "",
        )
        title = next(
            (record[f] for f in TITLE_FIELDS if isinstance(record.get(f), str) and record[f]),
            "",
        )
        if not text and not title:
            return None
        text = text or title

        record_id = next(
            (record[f] for f in ID_FIELDS if record.get(f) not in (None, "")), None
        )
        if record_id is None:
            fingerprint = json.dumps(self._json_safe(record), sort_keys=True)
            record_id = uuid.uuid5(uuid.NAMESPACE_URL, f"{self.source_id}:{fingerprint}")

        metadata = self._json_safe(record)
        metadata.update(
            {
                "source_type": SourceType.API.value,
                "api_endpoint": self._endpoint,
                "fetched_at": utcnow().isoformat(),
            }
        )
        return Content(
            id=str(record_id),
            source_id=self.source_id,
            title=title.strip() or text[:100],
            text=text,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def _ping(self) -> None:
        """Send one minimal request, without retries."""

        request_kwargs = self.build_request(PaginationState())
        if self.config.pagination is not None:
            request_kwargs["params"][self.config.pagination.limit_param] = 1
        await self.rate_limiter.acquire()
        await self.guard.execute_with_timeout(lambda: self._send(request_kwargs))

    async def connect(self) -> None:
        await self.guard.execute(self._ping, description="API connect")
        self._mark_connected()

    async def disconnect(self) -> None:
        self.session.close()
        self._mark_disconnected()

    async def validate_connection(self) -> bool:
        try:
            await self._ping()
        except DataSourceError as exc:
            self.logger.warning(
                "API validation failed", extra=self._log_context(error=exc.message)
            )
            return False
        return True

    async def get_content(self, last_sync: datetime | None = None) -> List[Content]:
        contents: List[Content] = []
        state = PaginationState(has_more=True)
        if self.config.pagination is not None and self.config.pagination.type is PaginationType.PAGE:
            state.next_page = self.config.pagination.start_page
        requests_made = 0
        dropped = 0

        while state.has_more and requests_made < MAX_REQUESTS:
            payload = await self._request(self.build_request(state, last_sync))
            requests_made += 1
            records = self.extract_records(payload)
            for record in records:
                content = self.record_to_content(record)
                if content is None:
                    dropped += 1
                    continue
                contents.append(content)
            state = self.next_state(payload, len(records), state)
            self.logger.debug(
                "Fetched API page",
                extra=self._log_context(
                    page=requests_made,
                    items=len(records),
                    total_fetched=len(contents),
                    has_more=state.has_more,
                ),
            )

        if state.has_more and requests_made >= MAX_REQUESTS:
            self.logger.warning(
                "Reached maximum request limit during content fetch",
                extra=self._log_context(max_requests=MAX_REQUESTS, fetched=len(contents)),
            )
        if dropped:
            self.logger.info(
                "Skipped records without text or title",
                extra=self._log_context(dropped=dropped),
            )
        return contents

    async def _collect(self, incremental: bool) -> Tuple[List[Content], List[str]]:
        last_sync = self.data_source.last_sync if incremental else None
        return await self.get_content(last_sync), []


__all__ = ["APIConnector", "MAX_REQUESTS"]
