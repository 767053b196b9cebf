"""doof_admin.data_cleanup

Data-quality analysis and the apply / reject change workflow
(--mode analyze | apply | reject).

analyze() scans every row of a resource type (optionally narrowed by the
schema's analysis filter) and proposes changes:

  field_cleanup  the field's configured rules composed in a fixed order
                 (trim, collapse_space, lowercase, title_case, phone_format,
                 url_prefix, truncate); one proposal per changed field
  zip_lookup     restaurants without a neighborhood get the neighborhood of
                 their city whose zipcode_ranges contains the zip code
  display_name   display-only: show the referenced entity's name for an id
  hide_column    display-only, all rows: column hidden from every record

Proposals are never stored. A change id encodes everything needed to
re-derive the change later:

    {resource_type}:{resource_id | *}:{field}:{change_type}

apply_changes() re-fetches the row, re-derives the value and writes it in
its own short transaction, so applying the same change twice writes the
same value again. reject_changes() records nothing for most types; rows
with a review status move to rejection_pending.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable

import psycopg
from psycopg import sql
from psycopg_pool import ConnectionPool

from doof_admin.admin_rules import FieldRules
from doof_admin.db import CONNECTION_ERRORS, TransactionScope, connection_scope
from doof_admin.normalize import format_us_phone, format_website, title_case, truncate_text
from doof_admin.resource_crud import find_resource_by_id, lookup_names, update_resource
from doof_admin.resource_registry import ResourceRegistry, ResourceSchema, default_registry
from doof_admin.shared import PersistenceConflict, ValidationError, truncate_reason

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FIELD_CLEANUP = "field_cleanup"
ZIP_LOOKUP = "zip_lookup"
DISPLAY_NAME = "display_name"
HIDE_COLUMN = "hide_column"

DISPLAY_ONLY_TYPES = frozenset({DISPLAY_NAME, HIDE_COLUMN})
CHANGE_TYPES = frozenset({FIELD_CLEANUP, ZIP_LOOKUP}) | DISPLAY_ONLY_TYPES

ALL_ROWS = "*"
REJECTION_PENDING = "rejection_pending"
REVIEWABLE_STATUSES = frozenset({"pending", "needs_review"})

_RULE_CONFIDENCE = {
    "trim": 1.0,
    "collapse_space": 1.0,
    "lowercase": 0.95,
    "title_case": 0.85,
    "phone_format": 0.9,
    "url_prefix": 0.9,
    "truncate": 0.7,
}

_ZIP5_RE = re.compile(r"\d{5}")


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChangeRef:
    """Parsed form of a change id."""

    resource_type: str
    resource_id: int | None
    field: str
    change_type: str


@dataclass(frozen=True)
class ChangeProposal:
    change_id: str
    resource_type: str
    resource_id: int | None
    field: str
    current_value: Any
    proposed_value: Any
    change_type: str
    reason: str
    confidence: float
    display_only: bool = False
    affects_all_rows: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "changeId": self.change_id,
            "resourceType": self.resource_type,
            "resourceId": self.resource_id,
            "field": self.field,
            "currentValue": self.current_value,
            "proposedValue": self.proposed_value,
            "changeType": self.change_type,
            "reason": self.reason,
            "confidence": self.confidence,
            "displayOnly": self.display_only,
            "affectsAllRows": self.affects_all_rows,
        }


@dataclass(frozen=True)
class ChangeResult:
    change_id: str
    success: bool
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"changeId": self.change_id, "success": self.success, "message": self.message}


@dataclass
class CleanupRunCounters:
    mode: str
    resource_type: str
    proposals: int = 0
    proposals_by_type: dict[str, int] = field(default_factory=dict)
    changes_requested: int = 0
    changes_succeeded: int = 0
    changes_failed: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "resource_type": self.resource_type,
            "proposals": self.proposals,
            "proposals_by_type": self.proposals_by_type,
            "changes_requested": self.changes_requested,
            "changes_succeeded": self.changes_succeeded,
            "changes_failed": self.changes_failed,
            "warnings": self.warnings[:50],
        }


# ---------------------------------------------------------------------------
# Change ids
# ---------------------------------------------------------------------------

def build_change_id(resource_type: str, resource_id: int | None, field: str, change_type: str) -> str:
    rid = ALL_ROWS if resource_id is None else str(resource_id)
    return f"{resource_type}:{rid}:{field}:{change_type}"


def parse_change_id(change_id: Any) -> ChangeRef:
    """Split a change id into its parts.

    Raises:
        ValidationError: the id is malformed or names an unknown change type.
    """
    parts = change_id.split(":") if isinstance(change_id, str) else []
    if len(parts) != 4 or not all(parts):
        raise ValidationError(f"Unrecognized change id {change_id!r}")
    resource_type, raw_id, field_name, change_type = parts
    if change_type not in CHANGE_TYPES:
        raise ValidationError(f"Unknown change type {change_type!r} in {change_id!r}")
    if raw_id == ALL_ROWS:
        resource_id = None
    elif raw_id.isdigit() and int(raw_id) > 0:
        resource_id = int(raw_id)
    else:
        raise ValidationError(f"Invalid resource id {raw_id!r} in {change_id!r}")
    return ChangeRef(resource_type, resource_id, field_name, change_type)


# ---------------------------------------------------------------------------
# Field rules
# ---------------------------------------------------------------------------

_RULE_STEPS: list[tuple[str, Callable[[str, FieldRules], str]]] = [
    ("trim", lambda v, r: v.strip()),
    ("collapse_space", lambda v, r: re.sub(r"\s+", " ", v)),
    ("lowercase", lambda v, r: v.lower()),
    ("title_case", lambda v, r: title_case(v)),
    ("phone_format", lambda v, r: format_us_phone(v)),
    ("url_prefix", lambda v, r: format_website(v) if v.strip() else v),
    ("truncate", lambda v, r: truncate_text(v, r.truncate)),
]


def apply_field_rules(value: Any, rules: FieldRules) -> tuple[Any, list[str]]:
    """Compose the enabled rules over value.

    Returns the final value and the names of the rules that changed it.
    Non-string values pass through untouched.
    """
    if not isinstance(value, str):
        return value, []
    enabled = set(rules.enabled())
    applied: list[str] = []
    current = value
    for name, step in _RULE_STEPS:
        if name not in enabled:
            continue
        updated = step(current, rules)
        if updated != current:
            applied.append(name)
            current = updated
    return current, applied


# ---------------------------------------------------------------------------
# Derivations
# ---------------------------------------------------------------------------

def _zip5(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    match = _ZIP5_RE.search(value)
    return match.group(0) if match else None


def _neighborhood_for_zip(scope: TransactionScope, city_id: int, zip_code: str) -> dict[str, Any] | None:
    return scope.fetch_one(
        """
        SELECT id, name FROM neighborhoods
        WHERE city_id = %s AND %s = ANY(zipcode_ranges)
        ORDER BY id ASC
        LIMIT 1
        """,
        (city_id, zip_code),
    )


def _derive_neighborhood(
    scope: TransactionScope,
    row: dict[str, Any],
    cache: dict[tuple[int, str], dict[str, Any] | None] | None = None,
) -> dict[str, Any] | None:
    zip_code = _zip5(row.get("zip_code"))
    city_id = row.get("city_id")
    if zip_code is None or city_id is None:
        return None
    if cache is None:
        return _neighborhood_for_zip(scope, city_id, zip_code)
    key = (city_id, zip_code)
    if key not in cache:
        cache[key] = _neighborhood_for_zip(scope, city_id, zip_code)
    return cache[key]


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

def _load_rows(scope: TransactionScope, schema: ResourceSchema) -> list[dict[str, Any]]:
    query = sql.SQL("SELECT * FROM {}").format(sql.Identifier(schema.table))
    if schema.analysis_filter:
        query = query + sql.SQL(" WHERE ") + sql.SQL(schema.analysis_filter)
    return scope.fetch_all(query + sql.SQL(" ORDER BY id ASC"))


def _proposal(
    schema: ResourceSchema,
    resource_id: int | None,
    field_name: str,
    change_type: str,
    current: Any,
    proposed: Any,
    reason: str,
    confidence: float,
    display_only: bool = False,
    affects_all_rows: bool = False,
) -> ChangeProposal:
    return ChangeProposal(
        change_id=build_change_id(schema.name, resource_id, field_name, change_type),
        resource_type=schema.name,
        resource_id=resource_id,
        field=field_name,
        current_value=current,
        proposed_value=proposed,
        change_type=change_type,
        reason=reason,
        confidence=confidence,
        display_only=display_only,
        affects_all_rows=affects_all_rows,
    )


def analyze(
    scope: TransactionScope,
    resource_type: str,
    registry: ResourceRegistry | None = None,
) -> list[ChangeProposal]:
    """Return change proposals for every row of resource_type.

    Read-only. Never emits a proposal whose proposed value equals the current
    value, and emits at most one all-rows proposal per (type, field).
    """
    registry = registry or default_registry()
    schema = registry.lookup(resource_type)
    rows = _load_rows(scope, schema)
    proposals: list[ChangeProposal] = []

    for column in schema.hidden_columns:
        proposals.append(_proposal(
            schema, None, column, HIDE_COLUMN, None, None,
            f"{column} is hidden from every {schema.name} record",
            1.0, display_only=True, affects_all_rows=True,
        ))

    ref_names: dict[str, dict[int, str]] = {}
    for column, ref_type in schema.display_refs.items():
        ids = sorted({row[column] for row in rows if row.get(column) is not None})
        ref_names[column] = lookup_names(scope, ref_type, ids, registry=registry)

    zip_cache: dict[tuple[int, str], dict[str, Any] | None] = {}

    for row in rows:
        rid = row["id"]
        for column, rules in schema.field_rules.items():
            if column not in row:
                continue
            proposed, applied = apply_field_rules(row[column], rules)
            if not applied or proposed == row[column]:
                continue
            proposals.append(_proposal(
                schema, rid, column, FIELD_CLEANUP, row[column], proposed,
                f"Applied {', '.join(applied)}",
                min(_RULE_CONFIDENCE[name] for name in applied),
            ))

        if schema.name == "restaurants" and row.get("neighborhood_id") is None:
            match = _derive_neighborhood(scope, row, zip_cache)
            if match is not None:
                proposals.append(_proposal(
                    schema, rid, "neighborhood_id", ZIP_LOOKUP, None, match["id"],
                    f"Zip code {_zip5(row.get('zip_code'))} lies in {match['name']}",
                    0.75,
                ))

        for column, ref_type in schema.display_refs.items():
            value = row.get(column)
            name = ref_names[column].get(value) if value is not None else None
            if name is None:
                continue
            proposals.append(_proposal(
                schema, rid, column, DISPLAY_NAME, value, name,
                f"Show {ref_type} name instead of id",
                1.0, display_only=True,
            ))

    log.info("Analysis of %s: %d row(s), %d proposal(s)", schema.name, len(rows), len(proposals))
    return proposals


def run_analyze(
    pool: ConnectionPool,
    resource_type: str,
    registry: ResourceRegistry | None = None,
) -> list[ChangeProposal]:
    """Run analyze() on a read-only pooled connection."""
    with connection_scope(pool, read_only=True) as scope:
        return analyze(scope, resource_type, registry=registry)


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------

def _check_ref(schema: ResourceSchema, ref: ChangeRef, change_id: str) -> None:
    if ref.resource_type != schema.name:
        raise ValidationError(f"Change {change_id} does not belong to {schema.name}")
    if ref.change_type == HIDE_COLUMN:
        if ref.field not in schema.hidden_columns or ref.resource_id is not None:
            raise ValidationError(f"Unrecognized change {change_id}")
        return
    if ref.resource_id is None:
        raise ValidationError(f"Change {change_id} must target a single row")
    if ref.change_type == DISPLAY_NAME and ref.field not in schema.display_refs:
        raise ValidationError(f"Unrecognized change {change_id}")
    if ref.change_type == FIELD_CLEANUP and ref.field not in schema.field_rules:
        raise ValidationError(f"No cleanup rules configured for {schema.name}.{ref.field}")
    if ref.change_type == ZIP_LOOKUP and (schema.name != "restaurants" or ref.field != "neighborhood_id"):
        raise ValidationError(f"Unrecognized change {change_id}")


def _derive_value(scope: TransactionScope, schema: ResourceSchema, ref: ChangeRef, row: dict[str, Any]) -> Any:
    if ref.change_type == FIELD_CLEANUP:
        value, _ = apply_field_rules(row.get(ref.field), schema.field_rules[ref.field])
        return value
    match = _derive_neighborhood(scope, row)
    if match is None:
        raise ValidationError(
            f"No neighborhood found for zip code {row.get('zip_code')!r} in city {row.get('city_id')}"
        )
    return match["id"]


def _apply_one(scope: TransactionScope, schema: ResourceSchema, change_id: Any, registry: ResourceRegistry) -> ChangeResult:
    try:
        ref = parse_change_id(change_id)
        _check_ref(schema, ref, change_id)
        if ref.change_type in DISPLAY_ONLY_TYPES:
            return ChangeResult(change_id, True, "Display-only change; no data modified")
        row = find_resource_by_id(scope, schema.name, ref.resource_id, for_update=True, registry=registry)
        if row is None:
            scope.rollback()
            return ChangeResult(change_id, False, f"{schema.name} with ID {ref.resource_id} not found")
        value = _derive_value(scope, schema, ref, row)
        update_resource(scope, schema.name, ref.resource_id, {ref.field: value}, registry=registry)
        scope.commit()
        return ChangeResult(change_id, True, truncate_reason(f"Set {ref.field} to {value!r}"))
    except CONNECTION_ERRORS as exc:
        log.error("Change %s failed, connection lost: %s", change_id, exc)
        return ChangeResult(change_id, False, truncate_reason(f"Transaction failed: {exc}"))
    except (ValidationError, PersistenceConflict, psycopg.Error) as exc:
        scope.rollback()
        log.warning("Change %s failed: %s", change_id, exc)
        return ChangeResult(change_id, False, truncate_reason(exc))


def apply_changes(
    pool: ConnectionPool,
    resource_type: str,
    change_ids: list[Any],
    registry: ResourceRegistry | None = None,
) -> list[ChangeResult]:
    """Apply each change independently; one result per change id, in order."""
    registry = registry or default_registry()
    schema = registry.lookup(resource_type)
    with connection_scope(pool) as scope:
        results = [_apply_one(scope, schema, cid, registry) for cid in change_ids]
    log.info(
        "Applied %d/%d change(s) on %s",
        sum(1 for r in results if r.success), len(results), schema.name,
    )
    return results


# ---------------------------------------------------------------------------
# Reject
# ---------------------------------------------------------------------------

def _reject_one(scope: TransactionScope, schema: ResourceSchema, change_id: Any, registry: ResourceRegistry) -> ChangeResult:
    try:
        ref = parse_change_id(change_id)
        _check_ref(schema, ref, change_id)
        if schema.status_column is None or ref.resource_id is None:
            return ChangeResult(change_id, True, "Change rejected; no data modified")
        row = find_resource_by_id(scope, schema.name, ref.resource_id, for_update=True, registry=registry)
        if row is None:
            scope.rollback()
            return ChangeResult(change_id, False, f"{schema.name} with ID {ref.resource_id} not found")
        status = row.get(schema.status_column)
        if status not in REVIEWABLE_STATUSES:
            scope.rollback()
            return ChangeResult(change_id, True, f"Change rejected; {schema.name} already {status}")
        update_resource(
            scope, schema.name, ref.resource_id,
            {schema.status_column: REJECTION_PENDING}, registry=registry,
        )
        scope.commit()
        return ChangeResult(change_id, True, f"Change rejected; {schema.name} marked {REJECTION_PENDING}")
    except CONNECTION_ERRORS as exc:
        log.error("Reject %s failed, connection lost: %s", change_id, exc)
        return ChangeResult(change_id, False, truncate_reason(f"Transaction failed: {exc}"))
    except (ValidationError, PersistenceConflict, psycopg.Error) as exc:
        scope.rollback()
        log.warning("Reject %s failed: %s", change_id, exc)
        return ChangeResult(change_id, False, truncate_reason(exc))


def reject_changes(
    pool: ConnectionPool,
    resource_type: str,
    change_ids: list[Any],
    registry: ResourceRegistry | None = None,
) -> list[ChangeResult]:
    """Record rejection of each change; one result per change id, in order."""
    registry = registry or default_registry()
    schema = registry.lookup(resource_type)
    with connection_scope(pool) as scope:
        return [_reject_one(scope, schema, cid, registry) for cid in change_ids]


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

def summarize_proposals(resource_type: str, proposals: list[ChangeProposal]) -> CleanupRunCounters:
    ctrs = CleanupRunCounters(mode="analyze", resource_type=resource_type)
    ctrs.proposals = len(proposals)
    ctrs.proposals_by_type = dict(Counter(p.change_type for p in proposals))
    return ctrs


def summarize_results(mode: str, resource_type: str, results: list[ChangeResult]) -> CleanupRunCounters:
    ctrs = CleanupRunCounters(mode=mode, resource_type=resource_type)
    ctrs.changes_requested = len(results)
    ctrs.changes_succeeded = sum(1 for r in results if r.success)
    ctrs.changes_failed = ctrs.changes_requested - ctrs.changes_succeeded
    ctrs.warnings = [f"{r.change_id}: {r.message}" for r in results if not r.success]
    return ctrs


def build_cleanup_report(ctrs: CleanupRunCounters) -> str:
    lines = [
        "=" * 60,
        f"Data Cleanup Report ({ctrs.mode}, {ctrs.resource_type})",
        "=" * 60,
    ]
    if ctrs.mode == "analyze":
        lines.append(f"  proposals:                      {ctrs.proposals}")
        for change_type, count in sorted(ctrs.proposals_by_type.items()):
            lines.append(f"    {change_type + ':':<30}{count}")
    else:
        lines += [
            f"  changes requested:              {ctrs.changes_requested}",
            f"  succeeded:                      {ctrs.changes_succeeded}",
            f"  failed:                         {ctrs.changes_failed}",
        ]
    if ctrs.warnings:
        lines.append(f"\nFailures ({len(ctrs.warnings)}):")
        for w in ctrs.warnings[:20]:
            lines.append(f"  {w}")
        if len(ctrs.warnings) > 20:
            lines.append(f"  ... and {len(ctrs.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)
