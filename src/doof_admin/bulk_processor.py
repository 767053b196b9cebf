"""doof_admin.bulk_processor

Transactional bulk add (--mode bulk_add).

A batch of typed items (restaurant, dish, neighborhood, city, hashtag) is
processed inside one database transaction:

  1. Duplicate pre-scan: items sharing a (type, normalized name, scope) key
     with an earlier item fail without touching the database.
  2. Validation: name present, type allowed, id fields positive integers,
     referenced rows exist (neighborhoods must belong to the item's city).
  3. Reference resolution: a city, neighborhood or restaurant given by name
     goes through the fuzzy matcher. One confident candidate is accepted;
     anything else ambiguous becomes review_needed with suggestions.
  4. Existing rows with the same key are skipped.
  5. Persistence through resource_crud, then tag links.

Each item runs inside its own SAVEPOINT so a failing item never poisons the
batch. A connection-level failure aborts the whole transaction and every
item is reported as an error.

Every item ends with exactly one outcome, in input order, and
processed == added + skipped + errored (review_needed counts as skipped).
"""

from __future__ import annotations

import csv
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

import psycopg
from psycopg import sql
from psycopg_pool import ConnectionPool

from doof_admin.db import CONNECTION_ERRORS, TransactionScope, connection_scope
from doof_admin.matcher import MatchCandidate, Matcher, MatchKind, classify, find_approximate
from doof_admin.normalize import (
    normalize_name,
    normalize_space,
    parse_positive_int,
    split_tags,
    trim,
)
from doof_admin.resource_crud import create_resource
from doof_admin.resource_registry import ResourceRegistry, default_registry
from doof_admin.shared import (
    InvalidStatusTransition,
    PersistenceConflict,
    TransactionFailure,
    ValidationError,
    truncate_reason,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ALLOWED_ITEM_TYPES: Mapping[str, str] = MappingProxyType({
    "restaurant":   "restaurants",
    "dish":         "dishes",
    "neighborhood": "neighborhoods",
    "city":         "cities",
    "hashtag":      "hashtags",
})

# Columns (besides the name) that identify an existing row of each type.
_EXISTENCE_SCOPE = {
    "restaurant":   ("city_id",),
    "dish":         ("restaurant_id",),
    "neighborhood": ("city_id",),
    "city":         ("state_code",),
    "hashtag":      (),
}

_TAG_LINKS = {
    "restaurant": ("restauranthashtags", "restaurant_id"),
    "dish":       ("dishhashtags", "dish_id"),
}

# Input aliases accepted from CSV / JSON imports.
_FIELD_ALIASES = {
    "location": "address",
    "place_id": "google_place_id",
    "zipcode":  "zip_code",
    "lat":      "latitude",
    "lng":      "longitude",
    "city_name": "city",
    "neighborhood_name": "neighborhood",
    "restaurant": "restaurant_name",
}

_RESERVED_KEYS = frozenset({"type", "name", "line", "tags"})


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

class ItemStatus(str, Enum):
    PROCESSING = "processing"
    ADDED = "added"
    SKIPPED = "skipped"
    REVIEW_NEEDED = "review_needed"
    ERROR = "error"


_TERMINAL_STATUSES = frozenset({
    ItemStatus.ADDED, ItemStatus.SKIPPED, ItemStatus.REVIEW_NEEDED, ItemStatus.ERROR,
})


@dataclass
class BulkItem:
    """One input row of a bulk add; never persisted as-is."""

    line: int
    type: str | None
    name: str | None
    payload: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)

    def to_input(self) -> dict[str, Any]:
        return {"name": self.name, "type": self.type, "line": self.line}


@dataclass
class ItemOutcome:
    item: BulkItem
    status: ItemStatus = ItemStatus.PROCESSING
    id: int | None = None
    reason: str | None = None
    suggestions: list[MatchCandidate] = field(default_factory=list)

    def finish(
        self,
        status: ItemStatus,
        reason: str | None = None,
        id: int | None = None,
        suggestions: Iterable[MatchCandidate] = (),
    ) -> None:
        """Move from processing to a terminal status; terminal states never change."""
        if self.status is not ItemStatus.PROCESSING or status not in _TERMINAL_STATUSES:
            raise InvalidStatusTransition(
                f"line {self.item.line}: cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        self.reason = truncate_reason(reason) if reason else None
        self.id = id
        self.suggestions = list(suggestions)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"input": self.item.to_input(), "status": self.status.value}
        if self.reason:
            out["reason"] = self.reason
        if self.id is not None:
            out["id"] = self.id
        if self.suggestions:
            out["suggestions"] = [c.to_dict() for c in self.suggestions]
        return out


@dataclass
class BulkResult:
    details: list[ItemOutcome]
    transaction_error: str | None = None

    @property
    def processed(self) -> int:
        return len(self.details)

    @property
    def added(self) -> int:
        return sum(1 for o in self.details if o.status is ItemStatus.ADDED)

    @property
    def skipped(self) -> int:
        return sum(
            1 for o in self.details
            if o.status in (ItemStatus.SKIPPED, ItemStatus.REVIEW_NEEDED)
        )

    @property
    def errored(self) -> int:
        return sum(1 for o in self.details if o.status is ItemStatus.ERROR)

    @property
    def review_needed(self) -> int:
        return sum(1 for o in self.details if o.status is ItemStatus.REVIEW_NEEDED)

    @property
    def message(self) -> str:
        if self.transaction_error:
            return f"Bulk add failed and was rolled back: {self.transaction_error}"
        return (
            f"Processed {self.processed} items: {self.added} added, "
            f"{self.skipped} skipped, {self.errored} errors."
        )

    @classmethod
    def failed(cls, items: list[BulkItem], reason: str) -> "BulkResult":
        outcomes = [ItemOutcome(item) for item in items]
        for outcome in outcomes:
            outcome.finish(ItemStatus.ERROR, reason)
        return cls(outcomes, transaction_error=reason)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processedCount": self.processed,
            "addedCount": self.added,
            "skippedCount": self.skipped,
            "errorCount": self.errored,
            "message": self.message,
            "details": [o.to_dict() for o in self.details],
        }


class _NeedsReview(Exception):
    """An item reference matched several candidates; a human must choose."""

    def __init__(self, message: str, suggestions: Iterable[MatchCandidate]) -> None:
        super().__init__(message)
        self.suggestions = list(suggestions)


# ---------------------------------------------------------------------------
# Input parsing
# ---------------------------------------------------------------------------

def parse_items(raw_items: Any) -> list[BulkItem]:
    """Build BulkItems from a request body ({"items": [...]}) or a plain list."""
    if isinstance(raw_items, Mapping):
        raw_items = raw_items.get("items")
    if not isinstance(raw_items, list):
        raise ValidationError("Bulk add expects a list of items")

    items: list[BulkItem] = []
    for idx, raw in enumerate(raw_items, start=1):
        if not isinstance(raw, Mapping):
            items.append(BulkItem(line=idx, type=None, name=None))
            continue
        try:
            line = parse_positive_int(raw.get("line")) or idx
        except ValueError:
            line = idx
        raw_type = raw.get("type")
        item_type = raw_type.strip().lower() if isinstance(raw_type, str) else None
        name = raw.get("name")
        payload = {k: v for k, v in raw.items() if k not in _RESERVED_KEYS}
        for alias, canonical in _FIELD_ALIASES.items():
            if alias in payload and canonical not in payload:
                payload[canonical] = payload.pop(alias)
        items.append(BulkItem(
            line=line,
            type=item_type or None,
            name=normalize_space(name) if isinstance(name, str) else None,
            payload=payload,
            tags=split_tags(raw.get("tags")),
        ))
    return items


def read_items_file(path: Path | str) -> list[BulkItem]:
    """Read bulk items from a .json or .csv file; blank CSV cells become None."""
    p = Path(path)
    if p.suffix.lower() == ".json":
        return parse_items(json.loads(p.read_text(encoding="utf-8")))
    with p.open(newline="", encoding="utf-8") as fh:
        reader = csv.DictReader(fh)
        if reader.fieldnames is None:
            raise ValueError(f"items CSV is empty or has no header: {p}")
        rows = [
            {k.strip(): trim(v) if isinstance(v, str) else v for k, v in row.items() if k}
            for row in reader
        ]
    return parse_items(rows)


# ---------------------------------------------------------------------------
# Duplicate pre-scan
# ---------------------------------------------------------------------------

def _ref_key(payload: Mapping[str, Any], id_field: str, name_field: str) -> tuple[str, str] | None:
    raw_id = payload.get(id_field)
    if raw_id not in (None, ""):
        return ("id", str(raw_id).strip())
    ref_name = payload.get(name_field)
    norm = normalize_name(ref_name) if isinstance(ref_name, str) else None
    return ("name", norm) if norm else None


def _state_key(payload: Mapping[str, Any]) -> str:
    state = payload.get("state_code")
    return state.strip().upper() if isinstance(state, str) else ""


_KEY_EXTRACTORS: dict[str, Callable[[BulkItem], tuple]] = {
    "restaurant":   lambda item: (_ref_key(item.payload, "city_id", "city"),),
    "dish":         lambda item: (_ref_key(item.payload, "restaurant_id", "restaurant_name"),),
    "neighborhood": lambda item: (_ref_key(item.payload, "city_id", "city"),),
    "city":         lambda item: (_state_key(item.payload),),
    "hashtag":      lambda item: (),
}


def duplicate_key(item: BulkItem) -> tuple | None:
    """Return the normalized identity key of an item, or None when it has none."""
    extractor = _KEY_EXTRACTORS.get(item.type or "")
    name = normalize_name(item.name)
    if extractor is None or name is None:
        return None
    return (item.type, name, *extractor(item))


def find_batch_duplicates(items: list[BulkItem]) -> dict[int, int]:
    """Map index of each repeated item to the line of the first item with its key."""
    first_seen: dict[tuple, int] = {}
    duplicates: dict[int, int] = {}
    for idx, item in enumerate(items):
        key = duplicate_key(item)
        if key is None:
            continue
        if key in first_seen:
            duplicates[idx] = first_seen[key]
        else:
            first_seen[key] = item.line
    return duplicates


# ---------------------------------------------------------------------------
# DB helpers
# ---------------------------------------------------------------------------

def _reference_exists(scope: TransactionScope, table: str, pk: int) -> bool:
    row = scope.fetch_one(
        sql.SQL("SELECT id FROM {} WHERE id = %s").format(sql.Identifier(table)),
        (pk,),
    )
    return row is not None


def _neighborhood_in_city(scope: TransactionScope, neighborhood_id: int, city_id: int) -> bool | None:
    """True/False for membership; None when the neighborhood does not exist."""
    row = scope.fetch_one(
        "SELECT city_id FROM neighborhoods WHERE id = %s",
        (neighborhood_id,),
    )
    if row is None:
        return None
    return row["city_id"] == city_id


def _find_existing_id(
    scope: TransactionScope,
    item_type: str,
    payload: Mapping[str, Any],
    registry: ResourceRegistry,
) -> int | None:
    schema = registry.lookup(ALLOWED_ITEM_TYPES[item_type])
    conditions = [
        sql.SQL("lower({}) = lower(%s)").format(sql.Identifier(schema.match_column))
    ]
    params: list[Any] = [payload["name"]]
    for col in _EXISTENCE_SCOPE[item_type]:
        conditions.append(sql.SQL("{} IS NOT DISTINCT FROM %s").format(sql.Identifier(col)))
        params.append(payload.get(col))
    row = scope.fetch_one(
        sql.SQL("SELECT id FROM {} WHERE {} ORDER BY id ASC LIMIT 1").format(
            sql.Identifier(schema.table), sql.SQL(" AND ").join(conditions)
        ),
        params,
    )
    return row["id"] if row else None


def _link_tags(scope: TransactionScope, item_type: str, row_id: int, tags: list[str]) -> list[str]:
    """Link known hashtags to a new row; return the tags that do not exist."""
    if not tags or item_type not in _TAG_LINKS:
        return []
    table, fk = _TAG_LINKS[item_type]
    rows = scope.fetch_all(
        "SELECT id, lower(name) AS name FROM hashtags WHERE lower(name) = ANY(%s)",
        (tags,),
    )
    found = {row["name"]: row["id"] for row in rows}
    insert = sql.SQL(
        "INSERT INTO {} ({}, hashtag_id) VALUES (%s, %s) ON CONFLICT DO NOTHING"
    ).format(sql.Identifier(table), sql.Identifier(fk))
    for tag in tags:
        if tag in found:
            scope.execute(insert, (row_id, found[tag]))
    missing = [t for t in tags if t not in found]
    if missing:
        log.warning("Skipped unknown tag(s) %s for %s id=%s", missing, item_type, row_id)
    return missing


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------

def _positive_id(payload: Mapping[str, Any], key: str) -> int | None:
    try:
        return parse_positive_int(payload.get(key))
    except ValueError:
        raise ValidationError(f"{key} must be a positive integer")


def _optional_text(payload: Mapping[str, Any], *keys: str) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str):
            value = trim(value)
        if value is not None:
            out[key] = value
    return out


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    raw = value.split(",") if isinstance(value, str) else value
    return [s for s in (trim(str(v)) for v in raw) if s]


class BulkProcessor:
    """Processes one batch on an open TransactionScope; never commits."""

    def __init__(
        self,
        scope: TransactionScope,
        registry: ResourceRegistry | None = None,
        matcher: Matcher = find_approximate,
    ) -> None:
        self.scope = scope
        self.registry = registry or default_registry()
        self.matcher = matcher
        self._preparers: dict[str, Callable[[BulkItem, list[str]], dict[str, Any]]] = {
            "restaurant":   self._prepare_restaurant,
            "dish":         self._prepare_dish,
            "neighborhood": self._prepare_neighborhood,
            "city":         self._prepare_city,
            "hashtag":      self._prepare_hashtag,
        }

    def process(self, items: list[BulkItem]) -> BulkResult:
        """Process every item; returns one outcome per item in input order.

        Raises:
            TransactionFailure: the connection or transaction failed; the
                caller must roll back.
        """
        outcomes = [ItemOutcome(item) for item in items]
        duplicates = find_batch_duplicates(items)
        for idx, outcome in enumerate(outcomes):
            if idx in duplicates:
                outcome.finish(
                    ItemStatus.ERROR,
                    f"Duplicate within batch: same as line {duplicates[idx]}",
                )
                continue
            self._process_one(outcome)
        return BulkResult(outcomes)

    def _process_one(self, outcome: ItemOutcome) -> None:
        item = outcome.item
        notes: list[str] = []
        try:
            with self.scope.savepoint("bulk_item"):
                self._validate(item)
                payload = self._preparers[item.type](item, notes)
                existing_id = _find_existing_id(self.scope, item.type, payload, self.registry)
                if existing_id is not None:
                    outcome.finish(
                        ItemStatus.SKIPPED,
                        f"{item.type.capitalize()} already exists (id {existing_id})",
                        id=existing_id,
                    )
                    return
                row = create_resource(
                    self.scope, ALLOWED_ITEM_TYPES[item.type], payload, registry=self.registry
                )
                missing_tags = _link_tags(self.scope, item.type, row["id"], item.tags)
                if missing_tags:
                    notes.append(f"Unknown tags skipped: {', '.join(missing_tags)}")
                outcome.finish(ItemStatus.ADDED, "; ".join(notes) or None, id=row["id"])
        except CONNECTION_ERRORS as exc:
            raise TransactionFailure(f"Transaction failed: {exc}") from exc
        except _NeedsReview as exc:
            outcome.finish(ItemStatus.REVIEW_NEEDED, str(exc), suggestions=exc.suggestions)
        except (ValidationError, PersistenceConflict, psycopg.Error) as exc:
            log.warning("Bulk item line %s (%s) failed: %s", item.line, item.type, exc)
            outcome.finish(ItemStatus.ERROR, str(exc))

    # -- validation ---------------------------------------------------------

    def _validate(self, item: BulkItem) -> None:
        if item.type not in ALLOWED_ITEM_TYPES:
            raise ValidationError(
                f"Unsupported item type {item.type!r}; expected one of "
                f"{', '.join(sorted(ALLOWED_ITEM_TYPES))}"
            )
        if not item.name:
            raise ValidationError("name is required")
        for key in item.payload:
            if key.endswith("_id") and key != "google_place_id":
                _positive_id(item.payload, key)

    # -- reference resolution ----------------------------------------------

    def _resolve_by_name(
        self,
        resource_type: str,
        name: str,
        label: str,
        notes: list[str],
        scope_key: Any = None,
    ) -> int:
        settings = self.registry.match_settings(resource_type)
        candidates = self.matcher(
            self.scope, resource_type, name,
            scope_key=scope_key, settings=settings, registry=self.registry,
        )
        decision = classify(candidates, settings)
        if decision.kind is MatchKind.NONE:
            raise ValidationError(f"{label.capitalize()} '{name}' not found")
        if decision.kind is MatchKind.CONFIDENT:
            chosen = decision.chosen
            notes.append(
                f"Auto-matched {label} '{name}' to '{chosen.name}' "
                f"(id {chosen.id}, score {chosen.score:.2f})"
            )
            return chosen.id
        raise _NeedsReview(
            f"Ambiguous {label} '{name}': {len(decision.candidates)} possible matches, "
            "confirm one and resubmit with its id",
            decision.candidates,
        )

    def _resolve_city(self, payload: Mapping[str, Any], notes: list[str]) -> int:
        city_id = _positive_id(payload, "city_id")
        if city_id is not None:
            if not _reference_exists(self.scope, "cities", city_id):
                raise ValidationError(f"City with id {city_id} does not exist")
            return city_id
        city = normalize_space(payload.get("city")) if isinstance(payload.get("city"), str) else None
        if city:
            return self._resolve_by_name("cities", city, "city", notes)
        raise ValidationError("city_id or city is required")

    def _resolve_neighborhood(
        self, payload: Mapping[str, Any], city_id: int, notes: list[str]
    ) -> int | None:
        neighborhood_id = _positive_id(payload, "neighborhood_id")
        if neighborhood_id is not None:
            membership = _neighborhood_in_city(self.scope, neighborhood_id, city_id)
            if membership is None:
                raise ValidationError(f"Neighborhood with id {neighborhood_id} does not exist")
            if not membership:
                raise ValidationError(
                    f"Neighborhood {neighborhood_id} does not belong to city {city_id}"
                )
            return neighborhood_id
        raw = payload.get("neighborhood")
        neighborhood = normalize_space(raw) if isinstance(raw, str) else None
        if neighborhood:
            return self._resolve_by_name(
                "neighborhoods", neighborhood, "neighborhood", notes, scope_key=city_id
            )
        return None

    def _resolve_restaurant(self, payload: Mapping[str, Any], notes: list[str]) -> int:
        restaurant_id = _positive_id(payload, "restaurant_id")
        if restaurant_id is not None:
            if not _reference_exists(self.scope, "restaurants", restaurant_id):
                raise ValidationError(f"Restaurant with id {restaurant_id} does not exist")
            return restaurant_id
        raw = payload.get("restaurant_name")
        restaurant = normalize_space(raw) if isinstance(raw, str) else None
        if not restaurant:
            raise ValidationError("restaurant_id or restaurant_name is required")
        city_id = _positive_id(payload, "city_id")
        if city_id is not None and not _reference_exists(self.scope, "cities", city_id):
            raise ValidationError(f"City with id {city_id} does not exist")
        return self._resolve_by_name(
            "restaurants", restaurant, "restaurant", notes, scope_key=city_id
        )

    # -- per-type payloads ---------------------------------------------------

    def _prepare_restaurant(self, item: BulkItem, notes: list[str]) -> dict[str, Any]:
        p = item.payload
        city_id = self._resolve_city(p, notes)
        payload: dict[str, Any] = {"name": item.name, "city_id": city_id}
        neighborhood_id = self._resolve_neighborhood(p, city_id, notes)
        if neighborhood_id is not None:
            payload["neighborhood_id"] = neighborhood_id
        chain_id = _positive_id(p, "chain_id")
        if chain_id is not None:
            payload["chain_id"] = chain_id
        payload.update(_optional_text(
            p, "address", "zip_code", "phone", "website", "google_place_id",
            "latitude", "longitude",
        ))
        return payload

    def _prepare_dish(self, item: BulkItem, notes: list[str]) -> dict[str, Any]:
        p = item.payload
        payload: dict[str, Any] = {
            "name": item.name,
            "restaurant_id": self._resolve_restaurant(p, notes),
        }
        payload.update(_optional_text(p, "description", "price"))
        return payload

    def _prepare_neighborhood(self, item: BulkItem, notes: list[str]) -> dict[str, Any]:
        p = item.payload
        payload: dict[str, Any] = {"name": item.name, "city_id": self._resolve_city(p, notes)}
        payload.update(_optional_text(p, "borough"))
        zipcodes = _string_list(p.get("zipcode_ranges"))
        if zipcodes:
            payload["zipcode_ranges"] = zipcodes
        return payload

    def _prepare_city(self, item: BulkItem, notes: list[str]) -> dict[str, Any]:
        p = item.payload
        state = _state_key(p)
        payload: dict[str, Any] = {"name": item.name, "state_code": state or None}
        payload.update(_optional_text(p, "country_code", "has_boroughs"))
        return payload

    def _prepare_hashtag(self, item: BulkItem, notes: list[str]) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": item.name}
        payload.update(_optional_text(item.payload, "category"))
        return payload


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def run_bulk_add(
    pool: ConnectionPool,
    items: list[BulkItem] | Any,
    dry_run: bool = False,
    registry: ResourceRegistry | None = None,
    matcher: Matcher = find_approximate,
) -> BulkResult:
    """Run a bulk add in one transaction on one pooled connection.

    Commits on success (rolls back when dry_run). On a transaction failure
    everything is rolled back and every item is reported as an error.
    """
    if not (isinstance(items, list) and all(isinstance(i, BulkItem) for i in items)):
        items = parse_items(items)
    log.info("Bulk add started: %d item(s), dry_run=%s", len(items), dry_run)

    with connection_scope(pool) as scope:
        try:
            result = BulkProcessor(scope, registry=registry, matcher=matcher).process(items)
        except (TransactionFailure, *CONNECTION_ERRORS) as exc:
            # connection_scope rolls the transaction back on release
            reason = truncate_reason(exc)
            log.error("Bulk add rolled back: %s", reason)
            return BulkResult.failed(items, reason)
        try:
            if dry_run:
                scope.rollback()
            else:
                scope.commit()
        except psycopg.Error as exc:
            # deferred constraints fire here, after every item was recorded
            reason = truncate_reason(f"Transaction failed at commit: {exc}")
            log.error("Bulk add commit failed: %s", reason)
            return BulkResult.failed(items, reason)

    log.info(
        "Bulk add finished: %d added, %d skipped (%d need review), %d errors",
        result.added, result.skipped, result.review_needed, result.errored,
    )
    return result


def build_bulk_report(result: BulkResult, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        "Bulk Add Report",
        f"  dry_run: {dry_run}",
        "=" * 60,
        f"  items processed:                {result.processed}",
        f"  added:                          {result.added}",
        f"  skipped:                        {result.skipped}",
        f"    of which need review:         {result.review_needed}",
        f"  errors:                         {result.errored}",
    ]
    if result.transaction_error:
        lines.append(f"\nTransaction failure: {result.transaction_error}")
    problems = [o for o in result.details if o.status in (ItemStatus.ERROR, ItemStatus.REVIEW_NEEDED)]
    if problems and not result.transaction_error:
        lines.append(f"\nItems needing attention ({len(problems)}):")
        for o in problems[:20]:
            lines.append(f"  line {o.item.line} [{o.status.value}] {o.item.name}: {o.reason}")
        if len(problems) > 20:
            lines.append(f"  ... and {len(problems) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)
