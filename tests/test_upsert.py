import os
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor

import psycopg2
import pytest
from psycopg2.extras import Json

from marketcrawl import upsert
from marketcrawl.errors import DataIntegrityError
from marketcrawl.models import ListingRecord, LocationKey, SaveOutcome, SellerKey
from marketcrawl.upsert import InMemoryListingGateway, PostgresListingGateway

TEST_DSN = os.getenv("MARKETCRAWL_TEST_DSN")


def _record(source_id=1, external_id="2716341102", images=None, **extra):
    return ListingRecord(
        source_id=source_id,
        external_id=external_id,
        url=f"https://www.leboncoin.fr/ad/velos/{external_id}",
        title="Vélo de course",
        price_cents=45000,
        seller=SellerKey(source_id=source_id, external_id="jean_dupont", display_name="Jean Dupont"),
        location=LocationKey(label="Lyon 69003"),
        images=images or [],
        **extra,
    )


def _race(gateway, record, workers=8):
    barrier = threading.Barrier(workers)

    def save():
        barrier.wait()
        return gateway.save(record)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(lambda _: save(), range(workers)))


def test_in_memory_save_is_at_most_once():
    gateway = InMemoryListingGateway()
    record = _record(images=["https://img/1.jpg"])

    assert gateway.exists(1, record.external_id) is False
    assert gateway.save(record) is SaveOutcome.SAVED
    assert gateway.exists(1, record.external_id) is True
    assert gateway.save(record.model_copy(update={"title": "changed"})) is SaveOutcome.SKIPPED
    assert gateway.listings[record.identity].title == "Vélo de course"


def test_in_memory_skip_attaches_new_images():
    gateway = InMemoryListingGateway()
    gateway.save(_record(images=["https://img/1.jpg"]))

    gateway.save(_record(images=["https://img/1.jpg", "https://img/2.jpg"]))

    assert gateway.images[(1, "2716341102")] == ["https://img/1.jpg", "https://img/2.jpg"]


def test_in_memory_concurrent_saves():
    gateway = InMemoryListingGateway()

    outcomes = _race(gateway, _record())

    assert outcomes.count(SaveOutcome.SAVED) == 1
    assert outcomes.count(SaveOutcome.SKIPPED) == len(outcomes) - 1


def test_in_memory_get_or_create_is_idempotent():
    gateway = InMemoryListingGateway()
    seller = SellerKey(source_id=1, external_id="s1", display_name="S")
    location = LocationKey(label="Nantes 44000")

    assert gateway.get_or_create_seller(seller) == gateway.get_or_create_seller(seller)
    assert gateway.get_or_create_location(location) == gateway.get_or_create_location(location)
    assert gateway.get_source_id("leboncoin") == gateway.get_source_id("leboncoin")
    assert gateway.get_source_id("leboncoin") != gateway.get_source_id("other")


def test_count_by_source():
    gateway = InMemoryListingGateway()
    gateway.save(_record(source_id=1, external_id="a"))
    gateway.save(_record(source_id=1, external_id="b"))
    gateway.save(_record(source_id=2, external_id="a"))

    assert gateway.count_by_source() == {1: 2, 2: 1}


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def execute(self, sql, params=None):
        self.conn.executed.append((sql, params))
        if self.conn.fail_on and self.conn.fail_on in sql:
            raise psycopg2.IntegrityError("violates foreign key constraint")
        self.rowcount = 1

    def fetchone(self):
        return self.conn.rows.pop(0)


class FakeConnection:
    def __init__(self, rows, fail_on=None):
        self.rows = list(rows)
        self.fail_on = fail_on
        self.executed = []
        self.commits = 0
        self.rollbacks = 0

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


def _fake_gateway(monkeypatch, conn):
    class FakePool:
        def __init__(self, minconn, maxconn, dsn):
            self.dsn = dsn

        def getconn(self):
            return conn

        def putconn(self, returned):
            assert returned is conn

        def closeall(self):
            pass

    monkeypatch.setattr(upsert, "ThreadedConnectionPool", FakePool)
    return PostgresListingGateway("postgresql://crawler@localhost/market")


def test_postgres_save_inserts_with_conflict_guard(monkeypatch):
    conn = FakeConnection(rows=[(7,), (8,), (42,)])
    gateway = _fake_gateway(monkeypatch, conn)

    outcome = gateway.save(_record(images=["https://img/1.jpg"]))

    assert outcome is SaveOutcome.SAVED
    insert_sql, params = conn.executed[2]
    assert "ON CONFLICT (source_id, external_id) DO NOTHING" in insert_sql
    assert params["seller_id"] == 7
    assert params["location_id"] == 8
    assert isinstance(params["raw_payload"], Json)
    assert conn.executed[3][1] == (42, "https://img/1.jpg", 0)
    assert conn.commits == 1


def test_postgres_conflict_is_skipped_and_images_attached(monkeypatch):
    conn = FakeConnection(rows=[(7,), (8,), None, (42,)])
    gateway = _fake_gateway(monkeypatch, conn)

    outcome = gateway.save(_record(images=["https://img/1.jpg", "https://img/2.jpg"]))

    assert outcome is SaveOutcome.SKIPPED
    assert [params for _, params in conn.executed[4:]] == [
        (42, "https://img/1.jpg", 0),
        (42, "https://img/2.jpg", 1),
    ]
    assert conn.commits == 1


def test_postgres_integrity_error_is_wrapped(monkeypatch):
    conn = FakeConnection(rows=[(7,), (8,)], fail_on="INSERT INTO listings")
    gateway = _fake_gateway(monkeypatch, conn)

    with pytest.raises(DataIntegrityError) as excinfo:
        gateway.save(_record())

    assert excinfo.value.external_id == "2716341102"
    assert conn.rollbacks == 1
    assert conn.commits == 0


@pytest.fixture(scope="module")
def pg_gateway():
    if not TEST_DSN:
        pytest.skip("MARKETCRAWL_TEST_DSN is not set")
    gateway = PostgresListingGateway(TEST_DSN, maxconn=8)
    gateway.ensure_schema()
    try:
        yield gateway
    finally:
        gateway.close()


def test_postgres_concurrent_saves_of_same_identity(pg_gateway):
    source_id = pg_gateway.get_source_id(f"test-{uuid.uuid4().hex[:8]}", "https://example.test")
    record = _record(source_id=source_id, images=["https://img/1.jpg"])

    outcomes = _race(pg_gateway, record)

    assert outcomes.count(SaveOutcome.SAVED) == 1
    assert pg_gateway.exists(source_id, record.external_id)
    assert pg_gateway.save(record) is SaveOutcome.SKIPPED


def test_postgres_get_or_create_is_idempotent(pg_gateway):
    source_id = pg_gateway.get_source_id(f"test-{uuid.uuid4().hex[:8]}")
    seller = SellerKey(source_id=source_id, external_id="s1", display_name="S")

    assert pg_gateway.get_or_create_seller(seller) == pg_gateway.get_or_create_seller(seller)
    location = LocationKey(label=f"Ville {uuid.uuid4().hex[:6]}")
    assert pg_gateway.get_or_create_location(location) == pg_gateway.get_or_create_location(location)
