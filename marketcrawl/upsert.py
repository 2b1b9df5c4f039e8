"""Persistence gateway: at-most-once listing saves and get-or-create lookups."""
from __future__ import annotations

import itertools
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Protocol, Tuple

import orjson
import psycopg2
from psycopg2.extensions import connection as PGConnection
from psycopg2.extensions import cursor as PGCursor
from psycopg2.extras import Json
from psycopg2.pool import ThreadedConnectionPool

from .errors import ConfigurationError, DataIntegrityError
from .models import ListingRecord, LocationKey, SaveOutcome, SellerKey

LOGGER = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sources (
    id SERIAL PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    base_url TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS sellers (
    id BIGSERIAL PRIMARY KEY,
    source_id INTEGER NOT NULL REFERENCES sources (id),
    external_id TEXT NOT NULL,
    display_name TEXT,
    profile_url TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (source_id, external_id)
);

CREATE TABLE IF NOT EXISTS locations (
    id BIGSERIAL PRIMARY KEY,
    label TEXT NOT NULL,
    country_code CHAR(2) NOT NULL DEFAULT 'FR',
    UNIQUE (label, country_code)
);

CREATE TABLE IF NOT EXISTS listings (
    id BIGSERIAL PRIMARY KEY,
    source_id INTEGER NOT NULL REFERENCES sources (id),
    external_id TEXT NOT NULL,
    url TEXT NOT NULL,
    title TEXT,
    description TEXT,
    price_cents BIGINT,
    currency CHAR(3) NOT NULL DEFAULT 'EUR',
    condition TEXT,
    has_shipping BOOLEAN NOT NULL DEFAULT FALSE,
    seller_id BIGINT REFERENCES sellers (id),
    location_id BIGINT REFERENCES locations (id),
    published_at TIMESTAMPTZ,
    raw_payload JSONB,
    first_seen TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (source_id, external_id)
);

CREATE TABLE IF NOT EXISTS listing_images (
    id BIGSERIAL PRIMARY KEY,
    listing_id BIGINT NOT NULL REFERENCES listings (id) ON DELETE CASCADE,
    image_url TEXT NOT NULL,
    position INTEGER NOT NULL DEFAULT 0,
    UNIQUE (listing_id, image_url)
);
"""


class ListingGateway(Protocol):
    """Storage contract used by the crawl loop.

    ``save`` returns ``SKIPPED`` exactly when ``exists`` would have been true
    at save time, even under concurrent saves of the same identity.
    """

    def get_source_id(self, name: str, base_url: Optional[str] = None) -> int:
        ...

    def exists(self, source_id: int, external_id: str) -> bool:
        ...

    def save(self, record: ListingRecord) -> SaveOutcome:
        ...

    def get_or_create_seller(self, key: SellerKey) -> int:
        ...

    def get_or_create_location(self, key: LocationKey) -> int:
        ...

    def count_by_source(self) -> Dict[int, int]:
        ...

    def close(self) -> None:
        ...


def _dumps(value) -> str:
    return orjson.dumps(value).decode()


class PostgresListingGateway:
    """PostgreSQL gateway; uniqueness is enforced by constraints, not lookups.

    Parameters
    ----------
    dsn : str
        libpq connection string or URL
    minconn, maxconn : int
        Bounds of the threaded connection pool
    """

    def __init__(self, dsn: str, *, minconn: int = 1, maxconn: int = 4) -> None:
        if not dsn:
            raise ConfigurationError("database_url is not set")
        self._pool = ThreadedConnectionPool(minconn, maxconn, dsn)

    @contextmanager
    def _cursor(self) -> Iterator[PGCursor]:
        conn: PGConnection = self._pool.getconn()
        try:
            with conn.cursor() as cur:
                yield cur
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    def ensure_schema(self) -> None:
        """Create tables and unique constraints if missing (idempotent)."""
        with self._cursor() as cur:
            cur.execute(SCHEMA_SQL)
        LOGGER.info("Database schema ensured")

    def close(self) -> None:
        self._pool.closeall()

    def get_source_id(self, name: str, base_url: Optional[str] = None) -> int:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO sources (name, base_url)
                VALUES (%s, %s)
                ON CONFLICT (name) DO UPDATE SET base_url = COALESCE(sources.base_url, EXCLUDED.base_url)
                RETURNING id;
                """,
                (name, base_url),
            )
            return cur.fetchone()[0]

    def exists(self, source_id: int, external_id: str) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "SELECT 1 FROM listings WHERE source_id = %s AND external_id = %s",
                (source_id, external_id),
            )
            return cur.fetchone() is not None

    def get_or_create_seller(self, key: SellerKey) -> int:
        with self._cursor() as cur:
            return self._seller_id(cur, key)

    def get_or_create_location(self, key: LocationKey) -> int:
        with self._cursor() as cur:
            return self._location_id(cur, key)

    def save(self, record: ListingRecord) -> SaveOutcome:
        """Insert the listing unless its identity already exists.

        An existing listing only gets new image URLs attached.
        """
        try:
            with self._cursor() as cur:
                seller_id = self._seller_id(cur, record.seller) if record.seller else None
                location_id = self._location_id(cur, record.location) if record.location else None
                cur.execute(
                    """
                    INSERT INTO listings (
                        source_id, external_id, url, title, description,
                        price_cents, currency, condition, has_shipping,
                        seller_id, location_id, published_at, raw_payload
                    )
                    VALUES (
                        %(source_id)s, %(external_id)s, %(url)s, %(title)s, %(description)s,
                        %(price_cents)s, %(currency)s, %(condition)s, %(has_shipping)s,
                        %(seller_id)s, %(location_id)s, %(published_at)s, %(raw_payload)s
                    )
                    ON CONFLICT (source_id, external_id) DO NOTHING
                    RETURNING id;
                    """,
                    {
                        "source_id": record.source_id,
                        "external_id": record.external_id,
                        "url": record.url,
                        "title": record.title,
                        "description": record.description,
                        "price_cents": record.price_cents,
                        "currency": record.currency,
                        "condition": record.condition,
                        "has_shipping": record.has_shipping,
                        "seller_id": seller_id,
                        "location_id": location_id,
                        "published_at": record.published_at,
                        "raw_payload": Json(record.raw_payload, dumps=_dumps),
                    },
                )
                row = cur.fetchone()
                if row is not None:
                    self._attach_images(cur, row[0], record.images)
                    return SaveOutcome.SAVED

                cur.execute(
                    "SELECT id FROM listings WHERE source_id = %s AND external_id = %s",
                    (record.source_id, record.external_id),
                )
                existing = cur.fetchone()
                if existing is not None and record.images:
                    added = self._attach_images(cur, existing[0], record.images)
                    if added:
                        LOGGER.debug("Attached %d new image(s) to %s", added, record.external_id)
                return SaveOutcome.SKIPPED
        except psycopg2.IntegrityError as exc:
            raise DataIntegrityError(
                f"integrity violation saving {record.external_id}: {exc}",
                external_id=record.external_id,
            ) from exc

    def count_by_source(self) -> Dict[int, int]:
        with self._cursor() as cur:
            cur.execute("SELECT source_id, COUNT(*) FROM listings GROUP BY source_id ORDER BY source_id")
            return {source_id: count for source_id, count in cur.fetchall()}

    @staticmethod
    def _seller_id(cur: PGCursor, key: SellerKey) -> int:
        cur.execute(
            """
            INSERT INTO sellers (source_id, external_id, display_name, profile_url)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (source_id, external_id) DO UPDATE
            SET profile_url = COALESCE(sellers.profile_url, EXCLUDED.profile_url)
            RETURNING id;
            """,
            (key.source_id, key.external_id, key.display_name, key.profile_url),
        )
        return cur.fetchone()[0]

    @staticmethod
    def _location_id(cur: PGCursor, key: LocationKey) -> int:
        cur.execute(
            """
            INSERT INTO locations (label, country_code)
            VALUES (%s, %s)
            ON CONFLICT (label, country_code) DO UPDATE SET label = locations.label
            RETURNING id;
            """,
            (key.label, key.country_code),
        )
        return cur.fetchone()[0]

    @staticmethod
    def _attach_images(cur: PGCursor, listing_id: int, images: List[str]) -> int:
        added = 0
        for position, image_url in enumerate(images):
            cur.execute(
                """
                INSERT INTO listing_images (listing_id, image_url, position)
                VALUES (%s, %s, %s)
                ON CONFLICT (listing_id, image_url) DO NOTHING;
                """,
                (listing_id, image_url, position),
            )
            added += cur.rowcount
        return added


class InMemoryListingGateway:
    """Lock-guarded gateway for tests and dry runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.sources: Dict[str, int] = {}
        self.listings: Dict[Tuple[int, str], ListingRecord] = {}
        self.images: Dict[Tuple[int, str], List[str]] = {}
        self.sellers: Dict[Tuple[int, str], int] = {}
        self.locations: Dict[Tuple[str, str], int] = {}

    def get_source_id(self, name: str, base_url: Optional[str] = None) -> int:
        with self._lock:
            if name not in self.sources:
                self.sources[name] = next(self._ids)
            return self.sources[name]

    def exists(self, source_id: int, external_id: str) -> bool:
        with self._lock:
            return (source_id, external_id) in self.listings

    def get_or_create_seller(self, key: SellerKey) -> int:
        with self._lock:
            return self._seller_id(key)

    def get_or_create_location(self, key: LocationKey) -> int:
        with self._lock:
            return self._location_id(key)

    def save(self, record: ListingRecord) -> SaveOutcome:
        with self._lock:
            if record.seller:
                self._seller_id(record.seller)
            if record.location:
                self._location_id(record.location)
            identity = record.identity
            if identity in self.listings:
                known = self.images.setdefault(identity, [])
                known.extend(url for url in record.images if url not in known)
                return SaveOutcome.SKIPPED
            self.listings[identity] = record
            self.images[identity] = list(dict.fromkeys(record.images))
            return SaveOutcome.SAVED

    def count_by_source(self) -> Dict[int, int]:
        with self._lock:
            counts: Dict[int, int] = {}
            for source_id, _ in self.listings:
                counts[source_id] = counts.get(source_id, 0) + 1
            return counts

    def close(self) -> None:
        pass

    def _seller_id(self, key: SellerKey) -> int:
        natural = (key.source_id, key.external_id)
        if natural not in self.sellers:
            self.sellers[natural] = next(self._ids)
        return self.sellers[natural]

    def _location_id(self, key: LocationKey) -> int:
        natural = (key.label, key.country_code)
        if natural not in self.locations:
            self.locations[natural] = next(self._ids)
        return self.locations[natural]
