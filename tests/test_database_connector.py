import asyncio
from datetime import datetime, timezone

import pytest
import sqlalchemy as sa
from pymongo.errors import ServerSelectionTimeoutError

from conftest import make_database_source
from fastrag.errors import ValidationError
from fastrag.ingestion.connectors import DatabaseConnector
from fastrag.ingestion.connectors.database import detect_dialect, mongo_database_name
from fastrag.ingestion.models import SourceStatus

ROWS = [
    {"id": 1, "title": "First", "content": "Alpha body", "updated_at": "2024-01-01 10:00:00"},
    {"id": 2, "title": None, "content": "Beta body", "updated_at": "2024-01-02 10:00:00"},
    {"id": 3, "title": "Empty", "content": "", "updated_at": "2024-01-03 10:00:00"},
]


def _create_db(path, rows=ROWS):
    engine = sa.create_engine(f"sqlite:///{path}")
    with engine.begin() as conn:
        conn.execute(
            sa.text(
                "CREATE TABLE articles (id INTEGER PRIMARY KEY, title TEXT, "
                "content TEXT, updated_at TEXT)"
            )
        )
        conn.execute(
            sa.text(
                "INSERT INTO articles (id, title, content, updated_at) "
                "VALUES (:id, :title, :content, :updated_at)"
            ),
            rows,
        )
    return engine


@pytest.fixture()
def db_path(tmp_path):
    path = tmp_path / "articles.db"
    engine = _create_db(path)
    yield path
    engine.dispose()


def test_detect_dialect():
    assert detect_dialect("postgres://h/db") == "postgresql"
    assert detect_dialect("postgresql+psycopg://h/db") == "postgresql"
    assert detect_dialect("sqlite:///x.db") == "sqlite"
    with pytest.raises(ValidationError):
        detect_dialect("oracle://h/db")


def test_mongodb_connection_string_names_database():
    assert detect_dialect("mongodb+srv://cluster.example.net/kb") == "mongodb"
    assert mongo_database_name("mongodb://localhost:27017/kb?authSource=admin") == "kb"
    assert mongo_database_name("mongodb://localhost:27017") == "default"


def test_postgres_url_gets_driver_and_credentials():
    connector = DatabaseConnector(make_database_source("postgresql://db.internal:5432/app"))
    url = connector._url
    assert url.drivername == "postgresql+psycopg"
    assert url.username == "reader"
    assert url.password == "pw"


def test_build_query_with_incremental_field(db_path):
    source = make_database_source(f"sqlite:///{db_path}", incremental_field="updated_at", batch_size=50)
    connector = DatabaseConnector(source)
    sql, params = connector.build_query("2024-01-01")
    assert sql == (
        "SELECT * FROM (SELECT * FROM articles) AS fastrag_src "
        "WHERE updated_at > :cursor ORDER BY updated_at LIMIT :limit"
    )
    assert params == {"limit": 50, "cursor": "2024-01-01"}


def test_full_sync_maps_rows(db_path, make_guard):
    source = make_database_source(f"sqlite:///{db_path}")
    connector = DatabaseConnector(source, guard=make_guard(source))

    result = asyncio.run(connector.sync())

    assert result.success
    assert result.documents_processed == 2
    assert result.documents_added == 2
    by_id = {c.id: c for c in connector.last_synced}
    assert by_id["1"].title == "First"
    assert by_id["2"].title == "Record 2"
    assert by_id["2"].text == "Beta body"
    metadata = by_id["1"].metadata
    assert metadata["source"] == "sqlite"
    assert metadata["table"] == "articles"
    assert metadata["record_id"] == 1
    assert metadata["modified_at"] == "2024-01-01 10:00:00"
    assert metadata["category"] == "database"
    assert connector.data_source.status is SourceStatus.ACTIVE
    assert connector.data_source.document_count == 2
    asyncio.run(connector.disconnect())


def test_incremental_sync_uses_high_water_mark(db_path, make_guard):
    source = make_database_source(f"sqlite:///{db_path}", incremental_field="updated_at")
    connector = DatabaseConnector(source, guard=make_guard(source))

    async def run():
        first = await connector.sync(incremental=True)
        engine = sa.create_engine(f"sqlite:///{db_path}")
        with engine.begin() as conn:
            conn.execute(
                sa.text(
                    "INSERT INTO articles (id, title, content, updated_at) "
                    "VALUES (4, 'Fourth', 'Delta body', '2024-01-04 10:00:00')"
                )
            )
        engine.dispose()
        second = await connector.sync(incremental=True)
        await connector.disconnect()
        return first, second

    first, second = asyncio.run(run())

    assert first.documents_processed == 2
    assert second.documents_processed == 1
    assert second.documents_added == 1
    assert second.documents_deleted == 0
    assert [c.id for c in connector.last_synced] == ["4"]
    assert connector._cursor == "2024-01-04 10:00:00"


def test_get_content_filters_by_last_sync(db_path, make_guard):
    source = make_database_source(f"sqlite:///{db_path}", incremental_field="updated_at")
    connector = DatabaseConnector(source, guard=make_guard(source))

    async def run():
        contents = await connector.get_content(datetime(2024, 1, 2, tzinfo=timezone.utc))
        await connector.disconnect()
        return contents

    contents = asyncio.run(run())
    assert [c.id for c in contents] == ["2"]


def test_custom_query_source(db_path, make_guard):
    source = make_database_source(
        f"sqlite:///{db_path}",
        table=None,
        query="SELECT id, title, content AS body FROM articles WHERE id = 1;",
    )
    connector = DatabaseConnector(source, guard=make_guard(source))

    async def run():
        contents = await connector.get_content()
        await connector.disconnect()
        return contents

    contents = asyncio.run(run())
    assert len(contents) == 1
    assert contents[0].text == "Alpha body"


def test_database_metadata_and_pool_stats(db_path, make_guard):
    source = make_database_source(f"sqlite:///{db_path}")
    connector = DatabaseConnector(source, guard=make_guard(source))
    assert connector.get_pool_stats() == {
        "size": 0,
        "checked_in": 0,
        "checked_out": 0,
        "overflow": 0,
    }

    async def run():
        metadata = await connector.get_database_metadata()
        stats = connector.get_pool_stats()
        healthy = await connector.health_check()
        await connector.disconnect()
        return metadata, stats, healthy

    metadata, stats, health = asyncio.run(run())
    assert metadata["table_name"] == "articles"
    assert metadata["record_count"] == 3
    assert metadata["dialect"] == "sqlite"
    assert metadata["last_sync_timestamp"] is None
    assert set(stats) == {"size", "checked_in", "checked_out", "overflow"}
    assert health.is_healthy
    assert not connector.is_connected


def test_unreachable_database_fails_sync(tmp_path, make_guard, recording_sleep):
    source = make_database_source(f"sqlite:///{tmp_path / 'missing' / 'nope.db'}")
    connector = DatabaseConnector(source, guard=make_guard(source))

    result = asyncio.run(connector.sync())

    assert not result.success
    assert "failed after 3 attempts" in result.errors[0]
    assert len(recording_sleep.delays) == 2
    assert connector.data_source.status is SourceStatus.ERROR
    assert connector.last_synced == []

    health = asyncio.run(connector.health_check())
    assert not health.is_healthy


def test_health_check_connects_lazily(db_path, make_guard):
    source = make_database_source(f"sqlite:///{db_path}")
    connector = DatabaseConnector(source, guard=make_guard(source))
    assert not connector.is_connected

    async def run():
        health = await connector.health_check()
        connected = connector.is_connected
        await connector.disconnect()
        return health, connected

    health, connected = asyncio.run(run())
    assert health.is_healthy
    assert health.error_count == 0
    assert connected


def test_failed_health_checks_make_one_attempt_each(tmp_path, make_guard, recording_sleep):
    source = make_database_source(f"sqlite:///{tmp_path / 'missing' / 'nope.db'}")
    connector = DatabaseConnector(source, guard=make_guard(source))

    first = asyncio.run(connector.health_check())
    second = asyncio.run(connector.health_check())

    assert not first.is_healthy
    assert first.error_count == 1
    assert second.error_count == 2
    assert recording_sleep.delays == []
    assert not connector.is_connected


# -- MongoDB ---------------------------------------------------------------


class FakeCursor:
    def __init__(self, docs):
        self.docs = list(docs)

    def sort(self, field, direction):
        self.docs.sort(key=lambda d: d[field], reverse=direction < 0)
        return self

    def limit(self, count):
        self.docs = self.docs[:count]
        return self

    def __iter__(self):
        return iter(self.docs)


class FakeCollection:
    def __init__(self, docs):
        self.docs = docs
        self.filters = []

    def find(self, query):
        self.filters.append(query)
        docs = self.docs
        for field, condition in query.items():
            docs = [d for d in docs if field in d and d[field] > condition["$gt"]]
        return FakeCursor(docs)

    def count_documents(self, query):
        return len(self.docs)


class FakeDatabase:
    def __init__(self, name, collections, down=False):
        self.name = name
        self.collections = collections
        self.down = down
        self.commands = []

    def __getitem__(self, name):
        return self.collections.setdefault(name, FakeCollection([]))

    def command(self, name):
        self.commands.append(name)
        if self.down:
            raise ServerSelectionTimeoutError("localhost:27017: timed out")
        return {"ok": 1.0}


class FakeMongoClient:
    """Stands in for ``pymongo.MongoClient``; records how it was built."""

    def __init__(self, collections, down=False):
        self.collections = collections
        self.down = down
        self.instances = []

    def __call__(self, url, **kwargs):
        self.url, self.kwargs = url, kwargs
        self.closed = False
        self.instances.append(self)
        return self

    def __getitem__(self, name):
        self.database = FakeDatabase(name, self.collections, down=self.down)
        return self.database

    def close(self):
        self.closed = True


MONGO_DOCS = [
    {
        "_id": "a1",
        "title": "First",
        "content": "Alpha body",
        "updatedAt": datetime(2024, 1, 1, tzinfo=timezone.utc),
    },
    {
        "_id": "b2",
        "body": "Beta body",
        "updatedAt": datetime(2024, 1, 2, tzinfo=timezone.utc),
    },
    {"_id": "c3", "title": "Empty", "updatedAt": datetime(2024, 1, 3, tzinfo=timezone.utc)},
]


def _mongo_connector(make_guard, docs=MONGO_DOCS, down=False, **config):
    config.setdefault("table", None)
    source = make_database_source("mongodb://db.internal:27017/kb", **config)
    client = FakeMongoClient({"documents": FakeCollection(list(docs))}, down=down)
    connector = DatabaseConnector(
        source, guard=make_guard(source), mongo_client_factory=client
    )
    return connector, client


def test_mongo_sync_reads_default_collection(make_guard):
    connector, client = _mongo_connector(make_guard)

    result = asyncio.run(connector.sync())

    assert result.success
    assert result.documents_added == 2
    by_id = {c.id: c for c in connector.last_synced}
    assert by_id["a1"].title == "First"
    assert by_id["b2"].title == "Record b2"
    assert by_id["b2"].text == "Beta body"
    metadata = by_id["a1"].metadata
    assert metadata["source"] == "mongodb"
    assert metadata["collection"] == "documents"
    assert metadata["modified_at"] == "2024-01-01T00:00:00+00:00"
    assert client.url == "mongodb://db.internal:27017/kb"
    assert client.kwargs["username"] == "reader"
    assert client.kwargs["maxPoolSize"] == 10
    assert client.kwargs["serverSelectionTimeoutMS"] == 30000
    assert client.database.name == "kb"
    assert client.database.commands == ["ping"]

    asyncio.run(connector.disconnect())
    assert client.closed
    assert not connector.is_connected


def test_mongo_incremental_sync_filters_on_field(make_guard):
    connector, client = _mongo_connector(make_guard, incremental_field="updatedAt")
    collection = client.collections["documents"]

    async def run():
        first = await connector.sync(incremental=True)
        collection.docs.append(
            {
                "_id": "d4",
                "content": "Delta body",
                "updatedAt": datetime(2024, 1, 4, tzinfo=timezone.utc),
            }
        )
        second = await connector.sync(incremental=True)
        return first, second

    first, second = asyncio.run(run())

    assert first.documents_processed == 2
    assert second.documents_processed == 1
    assert [c.id for c in connector.last_synced] == ["d4"]
    assert collection.filters[0] == {}
    assert collection.filters[1] == {
        "updatedAt": {"$gt": datetime(2024, 1, 3, tzinfo=timezone.utc)}
    }


def test_mongo_get_content_binds_last_sync(make_guard):
    connector, client = _mongo_connector(make_guard, incremental_field="updatedAt")

    contents = asyncio.run(connector.get_content(datetime(2024, 1, 1, tzinfo=timezone.utc)))

    assert [c.id for c in contents] == ["b2"]


def test_mongo_metadata_counts_documents(make_guard):
    connector, _ = _mongo_connector(make_guard, table="notes", docs=[])
    connector._mongo_factory.collections["notes"] = FakeCollection(list(MONGO_DOCS))

    metadata = asyncio.run(connector.get_database_metadata())

    assert metadata["table_name"] == "notes"
    assert metadata["record_count"] == 3
    assert metadata["database"] == "kb"
    assert metadata["dialect"] == "mongodb"
    assert connector.get_pool_stats()["size"] == 0


def test_unreachable_mongo_is_retried_and_health_is_single_attempt(make_guard, recording_sleep):
    connector, client = _mongo_connector(make_guard, down=True)

    result = asyncio.run(connector.sync())

    assert not result.success
    assert "failed after 3 attempts" in result.errors[0]
    assert len(client.instances) == 3
    assert all(c.closed for c in client.instances)

    recording_sleep.delays.clear()
    health = asyncio.run(connector.health_check())
    assert not health.is_healthy
    assert len(client.instances) == 4
    assert recording_sleep.delays == []
