"""doof_admin.db

Connection pool and transaction scope.

This module owns the pool (psycopg_pool.ConnectionPool). Every admin
operation borrows one connection through connection_scope(), which always
rolls back an unfinished transaction and returns the connection to the pool,
whatever path the caller exits by. Callers commit explicitly.

SQL parameter style:
- psycopg uses %s placeholders; identifiers are composed with psycopg.sql.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator

import psycopg
from psycopg import sql
from psycopg.pq import TransactionStatus
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

log = logging.getLogger(__name__)

DSN_ENV_VAR = "DOOF_DB_DSN"

# Errors that mean the connection or transaction itself is unusable.
CONNECTION_ERRORS = (psycopg.OperationalError, psycopg.InterfaceError)


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------

def resolve_dsn(dsn: str | None = None) -> str:
    value = (dsn or os.environ.get(DSN_ENV_VAR, "")).strip()
    if not value:
        raise RuntimeError(f"No database DSN given and {DSN_ENV_VAR} is not set.")
    return value


def open_pool(
    dsn: str | None = None,
    min_size: int = 1,
    max_size: int = 5,
    statement_timeout_ms: int | None = None,
) -> ConnectionPool:
    """Open a connection pool; connections are non-autocommit."""
    kwargs: dict[str, Any] = {"autocommit": False}
    if statement_timeout_ms:
        kwargs["options"] = f"-c statement_timeout={int(statement_timeout_ms)}"
    pool = ConnectionPool(
        resolve_dsn(dsn),
        min_size=min_size,
        max_size=max_size,
        kwargs=kwargs,
        name="doof-admin",
        open=True,
    )
    log.info("Opened connection pool (min=%s, max=%s)", min_size, max_size)
    return pool


# ---------------------------------------------------------------------------
# Transaction scope
# ---------------------------------------------------------------------------

class TransactionScope:
    """One borrowed connection and the transaction running on it."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn
        self._savepoint_seq = 0

    def execute(self, query: Any, params: Any = None) -> int:
        """Run a statement and return its rowcount."""
        with self.conn.cursor() as cur:
            cur.execute(query, params)
            return cur.rowcount

    def fetch_one(self, query: Any, params: Any = None) -> dict[str, Any] | None:
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, params)
            return cur.fetchone()

    def fetch_all(self, query: Any, params: Any = None) -> list[dict[str, Any]]:
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, params)
            return cur.fetchall()

    @contextmanager
    def savepoint(self, label: str = "sp") -> Iterator[None]:
        """Isolate a block: on error roll back to the savepoint and re-raise.

        Connection-level errors are re-raised untouched; the whole transaction
        is lost at that point and the caller must roll it back.
        """
        self._savepoint_seq += 1
        name = sql.Identifier(f"{label}_{self._savepoint_seq}")
        self.conn.execute(sql.SQL("SAVEPOINT {}").format(name))
        try:
            yield
        except CONNECTION_ERRORS:
            raise
        except Exception:
            self.conn.execute(sql.SQL("ROLLBACK TO SAVEPOINT {}").format(name))
            self.conn.execute(sql.SQL("RELEASE SAVEPOINT {}").format(name))
            raise
        else:
            self.conn.execute(sql.SQL("RELEASE SAVEPOINT {}").format(name))

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        if not self.conn.closed:
            self.conn.rollback()


@contextmanager
def connection_scope(pool: ConnectionPool, read_only: bool = False) -> Iterator[TransactionScope]:
    """Borrow a connection for one unit of work.

    Any transaction still open when the block exits (normally or by an
    exception) is rolled back before the connection goes back to the pool.
    """
    conn = pool.getconn()
    try:
        if read_only:
            conn.read_only = True
        yield TransactionScope(conn)
    finally:
        try:
            if not conn.closed:
                if conn.info.transaction_status != TransactionStatus.IDLE:
                    conn.rollback()
                if read_only:
                    conn.read_only = False
        except CONNECTION_ERRORS as exc:
            log.warning("Rollback on connection release failed: %s", exc)
        finally:
            pool.putconn(conn)
