"""Unit test fixtures.

FakeScope stands in for doof_admin.db.TransactionScope: it records every
query, answers fetches from queued results and counts savepoints, commits
and rollbacks. No database is involved.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

import pytest


class FakeScope:
    def __init__(self) -> None:
        self.queries: list[tuple[Any, Any]] = []
        self.one_results: list[Any] = []
        self.all_results: list[list[dict[str, Any]]] = []
        self.error: Exception | None = None
        self.savepoints = 0
        self.savepoint_rollbacks = 0
        self.commits = 0
        self.rollbacks = 0

    def _record(self, query: Any, params: Any) -> None:
        self.queries.append((query, params))
        if self.error is not None:
            raise self.error

    def execute(self, query: Any, params: Any = None) -> int:
        self._record(query, params)
        return 1

    def fetch_one(self, query: Any, params: Any = None) -> dict[str, Any] | None:
        self._record(query, params)
        return self.one_results.pop(0) if self.one_results else None

    def fetch_all(self, query: Any, params: Any = None) -> list[dict[str, Any]]:
        self._record(query, params)
        return self.all_results.pop(0) if self.all_results else []

    @contextmanager
    def savepoint(self, label: str = "sp") -> Iterator[None]:
        self.savepoints += 1
        try:
            yield
        except Exception:
            self.savepoint_rollbacks += 1
            raise

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1


@pytest.fixture
def scope() -> FakeScope:
    return FakeScope()


@pytest.fixture
def patch_connection_scope(monkeypatch, scope):
    """Make a module's connection_scope() yield the shared FakeScope."""

    def _patch(module) -> FakeScope:
        @contextmanager
        def fake_connection_scope(pool, read_only=False):
            yield scope

        monkeypatch.setattr(module, "connection_scope", fake_connection_scope)
        return scope

    return _patch
