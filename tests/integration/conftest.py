"""Integration test fixtures.

Applies migrations 0001 to 0004 against an ephemeral PostgreSQL database
provided by pytest-postgresql before any integration test runs.
"""

from __future__ import annotations

from pathlib import Path

import psycopg
import pytest
from psycopg_pool import ConnectionPool
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_extensions.sql",
    PROJECT_ROOT / "migrations" / "0002_core_entities.sql",
    PROJECT_ROOT / "migrations" / "0003_tags_and_submissions.sql",
    PROJECT_ROOT / "migrations" / "0004_indexes.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture: applies all migrations for every test
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (autocommit connection, dsn) with schema applied.

    The connection stays in autocommit so rows seeded through it are visible
    to pooled connections opened by the code under test.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture(scope="function")
def db_pool(db_conn):
    """Small non-autocommit pool on the migrated test database."""
    _, dsn = db_conn
    pool = ConnectionPool(dsn, min_size=1, max_size=2, kwargs={"autocommit": False}, open=True)
    try:
        yield pool
    finally:
        pool.close()


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------

def insert_returning_id(conn: psycopg.Connection, query: str, params: tuple) -> int:
    return conn.execute(query + " RETURNING id", params).fetchone()[0]


@pytest.fixture
def seed(db_conn):
    """Seed helpers bound to the autocommit connection."""
    conn, _ = db_conn

    class Seed:
        def city(self, name: str, state_code: str | None = "NY") -> int:
            return insert_returning_id(
                conn, "INSERT INTO cities (name, state_code) VALUES (%s, %s)", (name, state_code)
            )

        def neighborhood(self, name: str, city_id: int, zipcodes: list[str] | None = None) -> int:
            return insert_returning_id(
                conn,
                "INSERT INTO neighborhoods (name, city_id, zipcode_ranges) VALUES (%s, %s, %s)",
                (name, city_id, zipcodes or []),
            )

        def restaurant(self, name: str, city_id: int, **cols) -> int:
            columns = ["name", "city_id", *cols]
            placeholders = ", ".join(["%s"] * len(columns))
            return insert_returning_id(
                conn,
                f"INSERT INTO restaurants ({', '.join(columns)}) VALUES ({placeholders})",
                (name, city_id, *cols.values()),
            )

        def dish(self, name: str, restaurant_id: int) -> int:
            return insert_returning_id(
                conn, "INSERT INTO dishes (name, restaurant_id) VALUES (%s, %s)", (name, restaurant_id)
            )

        def hashtag(self, name: str, category: str | None = None) -> int:
            return insert_returning_id(
                conn, "INSERT INTO hashtags (name, category) VALUES (%s, %s)", (name, category)
            )

        def user(self, username: str, email: str) -> int:
            return insert_returning_id(
                conn,
                "INSERT INTO users (username, email, password_hash) VALUES (%s, %s, 'x')",
                (username, email),
            )

        def submission(self, type: str, name: str, status: str = "pending", **cols) -> int:
            columns = ["type", "name", "status", *cols]
            placeholders = ", ".join(["%s"] * len(columns))
            return insert_returning_id(
                conn,
                f"INSERT INTO submissions ({', '.join(columns)}) VALUES ({placeholders})",
                (type, name, status, *cols.values()),
            )

        def scalar(self, query: str, params: tuple = ()):
            row = conn.execute(query, params).fetchone()
            return row[0] if row else None

    return Seed()
