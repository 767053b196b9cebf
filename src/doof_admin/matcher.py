"""doof_admin.matcher

Approximate name lookup over PostgreSQL pg_trgm similarity.

find_approximate() returns candidates scoring above the similarity floor,
best first, ties broken by ascending id so results are stable for a fixed
database state. classify() turns a candidate list into a decision: nothing
found, a sole confident match that may be auto-accepted, or an ambiguous set
that needs a human.

Thresholds come from MatchSettings (matching section of the rule file).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from psycopg import sql

from doof_admin.admin_rules import MatchSettings
from doof_admin.db import TransactionScope
from doof_admin.normalize import normalize_space
from doof_admin.resource_registry import ResourceRegistry, default_registry

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MatchCandidate:
    id: int
    name: str
    address: str | None
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "score": round(self.score, 4),
        }


class MatchKind(str, Enum):
    NONE = "none"
    CONFIDENT = "confident"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class MatchDecision:
    kind: MatchKind
    candidates: tuple[MatchCandidate, ...]
    chosen: MatchCandidate | None = None


Matcher = Callable[..., "list[MatchCandidate]"]


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

def find_approximate(
    scope: TransactionScope,
    resource_type: str,
    name: str | None,
    scope_key: Any = None,
    limit: int | None = None,
    settings: MatchSettings | None = None,
    registry: ResourceRegistry | None = None,
) -> list[MatchCandidate]:
    """Return up to `limit` candidates whose name resembles `name`.

    Args:
        scope: Open transaction scope.
        resource_type: Registered resource type to search.
        name: Free-text name; blank names return [] without a query.
        scope_key: Optional value of the resource's scope column (city for
            restaurants and neighborhoods, restaurant for dishes).
        limit: Maximum candidates; defaults to settings.candidate_limit.
        settings: Thresholds; defaults to the registry's per-type settings.
    """
    registry = registry or default_registry()
    schema = registry.lookup(resource_type)
    settings = settings or registry.match_settings(schema.name)
    needle = normalize_space(name)
    if not needle:
        return []

    column = sql.Identifier(schema.match_column)
    address = (
        sql.Identifier("address")
        if "address" in schema.create_columns
        else sql.SQL("NULL::text")
    )
    conditions = [sql.SQL("similarity({}, %(needle)s) > %(floor)s").format(column)]
    params: dict[str, Any] = {
        "needle": needle,
        "floor": settings.similarity_floor,
        "limit": limit or settings.candidate_limit,
    }
    if scope_key is not None:
        if schema.scope_column is None:
            raise ValueError(f"{schema.name} has no scope column to restrict matches by")
        conditions.append(
            sql.SQL("{} = %(scope_key)s").format(sql.Identifier(schema.scope_column))
        )
        params["scope_key"] = scope_key

    query = sql.SQL(
        "SELECT id, {col} AS name, {address} AS address, "
        "similarity({col}, %(needle)s) AS score "
        "FROM {table} WHERE {where} "
        "ORDER BY score DESC, id ASC LIMIT %(limit)s"
    ).format(
        col=column,
        address=address,
        table=sql.Identifier(schema.table),
        where=sql.SQL(" AND ").join(conditions),
    )
    rows = scope.fetch_all(query, params)
    candidates = [
        MatchCandidate(
            id=row["id"],
            name=row["name"],
            address=row["address"],
            score=float(row["score"]),
        )
        for row in rows
    ]
    log.debug(
        "Approximate %s lookup for %r (scope=%s): %d candidate(s)",
        schema.name, needle, scope_key, len(candidates),
    )
    return candidates


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------

def classify(
    candidates: list[MatchCandidate],
    settings: MatchSettings | None = None,
) -> MatchDecision:
    """Decide whether a candidate list resolves a reference on its own.

    Confident only when a single candidate cleared the similarity floor and
    it reaches the confident threshold; any other non-empty list is
    ambiguous, including a strong match with weaker competitors.
    """
    settings = settings or MatchSettings()
    ordered = tuple(sorted(candidates, key=lambda c: (-c.score, c.id)))
    if not ordered:
        return MatchDecision(MatchKind.NONE, ordered)
    if len(ordered) == 1 and ordered[0].score >= settings.confident_threshold:
        return MatchDecision(MatchKind.CONFIDENT, ordered, chosen=ordered[0])
    return MatchDecision(MatchKind.AMBIGUOUS, ordered)
