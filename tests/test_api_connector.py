import asyncio
from datetime import datetime, timezone

import pytest
import requests

from conftest import make_api_source
from fastrag.errors import AuthenticationError, DataSourceError
from fastrag.ingestion.connectors import APIConnector, create_connector
from fastrag.ingestion.connectors.api import MAX_REQUESTS
from fastrag.ingestion.models import SourceStatus
from fastrag.ingestion.rate_limit import RateLimiter


class DummyResponse:
    def __init__(self, payload=None, status_code=200, headers=None, reason="OK"):
        self._payload = payload
        self.status_code = status_code
        self.headers = headers or {}
        self.reason = reason

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class DummySession:
    """Replays canned responses and records each request."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if callable(response):
            response = response(len(self.calls), kwargs)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        self.closed = True


def _records(start, count):
    return [
        {"id": i, "title": f"Item {i}", "content": f"Body of item {i}"}
        for i in range(start, start + count)
    ]


def _connector(source, responses, make_guard):
    session = DummySession(responses)
    connector = APIConnector(
        source,
        session=session,
        rate_limiter=RateLimiter(1000),
        guard=make_guard(source),
    )
    return connector, session


def test_offset_pagination_stops_at_total(make_guard):
    source = make_api_source(pagination={"type": "offset"})
    connector, session = _connector(
        source,
        [
            DummyResponse({"data": _records(0, 100), "total": 250}),
            DummyResponse({"data": _records(100, 100), "total": 250}),
            DummyResponse({"data": _records(200, 50), "total": 250}),
        ],
        make_guard,
    )

    contents = asyncio.run(connector.get_content())

    assert len(contents) == 250
    assert len(session.calls) == 3
    offsets = [call["params"].get("offset") for call in session.calls]
    assert offsets == [None, 100, 200]
    assert all(call["params"]["limit"] == 100 for call in session.calls)
    assert contents[0].id == "0"
    assert contents[0].title == "Item 0"
    assert contents[0].metadata["source_type"] == "api"


def test_offset_pagination_without_total_uses_page_fullness(make_guard):
    source = make_api_source(pagination={"type": "offset"}, batch_size=2)
    connector, session = _connector(
        source,
        [DummyResponse(_records(0, 2)), DummyResponse(_records(2, 1))],
        make_guard,
    )
    contents = asyncio.run(connector.get_content())
    assert len(contents) == 3
    assert len(session.calls) == 2


def test_cursor_pagination_follows_next_cursor(make_guard):
    source = make_api_source(pagination={"type": "cursor"})
    connector, session = _connector(
        source,
        [
            DummyResponse({"items": _records(0, 2), "next_cursor": "c2"}),
            DummyResponse({"items": _records(2, 2), "next_cursor": None}),
        ],
        make_guard,
    )

    contents = asyncio.run(connector.get_content())

    assert len(contents) == 4
    assert "cursor" not in session.calls[0]["params"]
    assert session.calls[1]["params"]["cursor"] == "c2"


def test_cursor_field_path_is_configurable(make_guard):
    source = make_api_source(
        pagination={"type": "cursor", "next_cursor_field": "meta.next", "cursor_param": "after"}
    )
    connector, session = _connector(
        source,
        [
            DummyResponse({"results": _records(0, 1), "meta": {"next": "abc"}}),
            DummyResponse({"results": _records(1, 1), "meta": {}}),
        ],
        make_guard,
    )
    asyncio.run(connector.get_content())
    assert session.calls[1]["params"]["after"] == "abc"


def test_page_pagination_uses_total_pages(make_guard):
    source = make_api_source(pagination={"type": "page"})
    connector, session = _connector(
        source,
        [
            DummyResponse({"items": _records(0, 3), "page": 1, "total_pages": 2}),
            DummyResponse({"items": _records(3, 3), "page": 2, "total_pages": 2}),
        ],
        make_guard,
    )

    contents = asyncio.run(connector.get_content())

    assert len(contents) == 6
    assert [call["params"]["page"] for call in session.calls] == [1, 2]


def test_request_cap_stops_endless_pagination(make_guard):
    source = make_api_source(pagination={"type": "cursor"})
    connector, session = _connector(
        source,
        [lambda n, kwargs: DummyResponse({"data": _records(n, 1), "next_cursor": f"c{n}"})],
        make_guard,
    )

    contents = asyncio.run(connector.get_content())

    assert len(session.calls) == MAX_REQUESTS
    assert len(contents) == MAX_REQUESTS


def test_without_pagination_a_single_request_is_made(make_guard):
    source = make_api_source()
    connector, session = _connector(source, [DummyResponse(_records(0, 3))], make_guard)
    assert len(asyncio.run(connector.get_content())) == 3
    assert len(session.calls) == 1
    assert "limit" not in session.calls[0]["params"]


def test_records_path_and_dropped_records(make_guard):
    source = make_api_source(records_path="payload.entries")
    body = {
        "payload": {
            "entries": [
                {"id": 1},
                {"id": 2, "title": "Only a title"},
                {"name": "No id", "text": "has text"},
                "not a record",
            ]
        }
    }
    connector, _ = _connector(source, [DummyResponse(body)], make_guard)

    contents = asyncio.run(connector.get_content())

    assert [c.title for c in contents] == ["Only a title", "No id"]
    assert contents[0].text == "Only a title"
    assert contents[1].id != ""
    again = connector.record_to_content({"name": "No id", "text": "has text"})
    assert again.id == contents[1].id


def test_since_param_and_post_body(make_guard):
    source = make_api_source(method="post", body={"filter": "all"}, query_params={"lang": "en"})
    connector, session = _connector(source, [DummyResponse([])], make_guard)

    asyncio.run(connector.get_content(datetime(2024, 1, 1, tzinfo=timezone.utc)))

    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["json"] == {"filter": "all"}
    assert call["params"] == {"lang": "en", "since": "2024-01-01T00:00:00+00:00"}
    assert call["timeout"] == 30.0


@pytest.mark.parametrize(
    "credentials, header, expected",
    [
        ({"api_key": "k", "token": "t"}, "X-API-Key", "k"),
        ({"token": "t"}, "Authorization", "Bearer t"),
        ({"username": "user", "password": "pass"}, "Authorization", "Basic dXNlcjpwYXNz"),
    ],
)
def test_auth_header_precedence(credentials, header, expected, make_guard):
    source = make_api_source(credentials=credentials)
    connector, session = _connector(source, [DummyResponse([])], make_guard)
    asyncio.run(connector.get_content())
    headers = session.calls[0]["headers"]
    assert headers[header] == expected
    assert headers["Accept"] == "application/json"
    if header == "X-API-Key":
        assert "Authorization" not in headers


def test_header_templates_use_credentials(make_guard):
    source = make_api_source(headers={"X-Token": "{token}", "X-Other": "{missing}"})
    connector, _ = _connector(source, [DummyResponse([])], make_guard)
    assert connector._headers["X-Token"] == "secret-token"
    assert connector._headers["X-Other"] == "{missing}"


def test_auth_failure_is_not_retried(make_guard, recording_sleep):
    source = make_api_source()
    connector, session = _connector(
        source, [DummyResponse(status_code=401, reason="Unauthorized")], make_guard
    )
    with pytest.raises(AuthenticationError):
        asyncio.run(connector.get_content())
    assert len(session.calls) == 1
    assert recording_sleep.delays == []


def test_rate_limit_honours_retry_after(make_guard, recording_sleep):
    source = make_api_source()
    connector, session = _connector(
        source,
        [
            DummyResponse(status_code=429, headers={"Retry-After": "5"}),
            DummyResponse(_records(0, 1)),
        ],
        make_guard,
    )
    assert len(asyncio.run(connector.get_content())) == 1
    assert len(session.calls) == 2
    assert recording_sleep.delays[0] >= 5


def test_server_errors_are_retried_client_errors_are_not(make_guard):
    source = make_api_source()
    connector, session = _connector(
        source,
        [DummyResponse(status_code=503, reason="Unavailable"), DummyResponse(_records(0, 2))],
        make_guard,
    )
    assert len(asyncio.run(connector.get_content())) == 2

    connector, session = _connector(
        source, [DummyResponse(status_code=404, reason="Not Found")], make_guard
    )
    with pytest.raises(DataSourceError) as excinfo:
        asyncio.run(connector.get_content())
    assert excinfo.value.code == "HTTP_ERROR"
    assert len(session.calls) == 1


def test_transport_errors_are_classified(make_guard):
    source = make_api_source(retry_attempts=2)
    connector, session = _connector(
        source, [requests.ConnectionError("refused")], make_guard
    )
    with pytest.raises(DataSourceError) as excinfo:
        asyncio.run(connector.get_content())
    assert excinfo.value.code == "MAX_RETRIES_EXCEEDED"
    assert len(session.calls) == 2

    connector, _ = _connector(source, [DummyResponse(ValueError("not json"))], make_guard)
    with pytest.raises(DataSourceError) as excinfo:
        asyncio.run(connector.get_content())
    assert excinfo.value.code == "PARSE_ERROR"


def test_sync_tracks_added_updated_and_deleted(make_guard):
    source = make_api_source()
    first = _records(0, 3)
    second = [dict(first[0], content="changed"), first[1]]
    connector, session = _connector(
        source,
        [DummyResponse([]), DummyResponse(first), DummyResponse(second)],
        make_guard,
    )

    async def run():
        one = await connector.sync()
        two = await connector.sync()
        return one, two

    one, two = asyncio.run(run())

    assert one.success and one.documents_added == 3
    assert two.documents_added == 0
    assert two.documents_updated == 1
    assert two.documents_deleted == 1
    assert connector.data_source.status is SourceStatus.ACTIVE
    assert connector.data_source.document_count == 2
    assert session.calls[0]["params"] == {}


def test_failed_sync_reports_error_and_health(make_guard):
    source = make_api_source()
    connector, _ = _connector(
        source, [DummyResponse(status_code=403, reason="Forbidden")], make_guard
    )

    result = asyncio.run(connector.sync())
    assert not result.success
    assert "Authentication failed" in result.errors[0]
    assert connector.data_source.status is SourceStatus.ERROR

    health = asyncio.run(connector.health_check())
    assert not health.is_healthy
    assert health.error_count == 1


def test_health_check_sends_a_single_request(make_guard, recording_sleep):
    source = make_api_source(pagination={"type": "offset"})
    connector, session = _connector(
        source, [DummyResponse(status_code=503, reason="Unavailable")], make_guard
    )

    first = asyncio.run(connector.health_check())
    second = asyncio.run(connector.health_check())

    assert not first.is_healthy
    assert len(session.calls) == 2
    assert session.calls[0]["params"]["limit"] == 1
    assert recording_sleep.delays == []
    assert first.error_count == 1
    assert second.error_count == 2
    assert connector.get_metrics().total_queries == 2


def test_connect_retries_server_errors(make_guard, recording_sleep):
    source = make_api_source()
    connector, session = _connector(
        source,
        [DummyResponse(status_code=503, reason="Unavailable"), DummyResponse([])],
        make_guard,
    )

    asyncio.run(connector.connect())

    assert connector.is_connected
    assert len(session.calls) == 2
    assert len(recording_sleep.delays) == 1


def test_disconnect_closes_session(make_guard):
    connector, session = _connector(make_api_source(), [DummyResponse([])], make_guard)
    asyncio.run(connector.connect())
    assert connector.is_connected
    asyncio.run(connector.disconnect())
    assert session.closed and not connector.is_connected


def test_create_connector_dispatches_on_type():
    connector = create_connector(
        {
            "name": "api",
            "type": "api",
            "config": {"api_endpoint": "https://x.test/a", "credentials": {"token": "t"}},
        }
    )
    assert isinstance(connector, APIConnector)
