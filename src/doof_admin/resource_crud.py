"""doof_admin.resource_crud

Single-resource create / update / delete / find_by_id over any registered
resource type.

Callers pass payloads that may contain arbitrary keys; only the schema's
whitelisted columns reach SQL, composed with psycopg.sql identifiers. All
values are bound parameters. Functions run inside the caller's
TransactionScope and never commit.

Database constraint failures surface as PersistenceConflict naming the field
and constraint; malformed values (wrong type for a column) surface as
ValidationError.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from typing import Any, Iterator, Mapping

import psycopg
from psycopg import errors, sql

from doof_admin.db import TransactionScope
from doof_admin.normalize import parse_positive_int
from doof_admin.resource_registry import ResourceRegistry, ResourceSchema, default_registry
from doof_admin.shared import NoValidColumns, PersistenceConflict, ValidationError

log = logging.getLogger(__name__)

_DETAIL_KEY_RE = re.compile(r"Key \(([^)]+)\)=")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _schema(resource_type: str, registry: ResourceRegistry | None) -> ResourceSchema:
    return (registry or default_registry()).lookup(resource_type)


def _require_id(resource_id: Any) -> int:
    try:
        pk = parse_positive_int(resource_id)
    except ValueError as exc:
        raise ValidationError(f"Invalid id: {exc}") from exc
    if pk is None:
        raise ValidationError("An id is required")
    return pk


def _conflict_field(exc: psycopg.Error) -> str | None:
    diag = exc.diag
    if diag.column_name:
        return diag.column_name
    match = _DETAIL_KEY_RE.search(diag.message_detail or "")
    return match.group(1) if match else None


def conflict_from_error(resource_type: str, exc: psycopg.IntegrityError) -> PersistenceConflict:
    """Translate a psycopg integrity error into a PersistenceConflict."""
    field = _conflict_field(exc)
    constraint = exc.diag.constraint_name
    if isinstance(exc, errors.UniqueViolation):
        message = f"{resource_type}: a record with this {field or 'key'} already exists"
    elif isinstance(exc, errors.ForeignKeyViolation):
        message = f"Invalid reference: {field or 'referenced record'} does not exist"
    elif isinstance(exc, errors.NotNullViolation):
        message = f"{field or 'a required field'} is required"
    elif isinstance(exc, errors.CheckViolation):
        message = f"Invalid value for {field or constraint or 'a constrained field'}"
    else:
        message = exc.diag.message_primary or str(exc)
    return PersistenceConflict(message, field=field, constraint=constraint)


@contextmanager
def _translate_errors(resource_type: str) -> Iterator[None]:
    try:
        yield
    except psycopg.IntegrityError as exc:
        raise conflict_from_error(resource_type, exc) from exc
    except psycopg.DataError as exc:
        raise ValidationError(
            f"Invalid value for {resource_type}: {exc.diag.message_primary or exc}"
        ) from exc


def _assignments(columns: Mapping[str, Any], schema: ResourceSchema) -> sql.Composed:
    parts = [
        sql.SQL("{} = {}").format(sql.Identifier(col), sql.Placeholder())
        for col in columns
    ]
    if schema.touches_updated_at:
        parts.append(sql.SQL("{} = now()").format(sql.Identifier("updated_at")))
    return sql.SQL(", ").join(parts)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

def find_resource_by_id(
    scope: TransactionScope,
    resource_type: str,
    resource_id: Any,
    for_update: bool = False,
    registry: ResourceRegistry | None = None,
) -> dict[str, Any] | None:
    """Return the raw row or None."""
    schema = _schema(resource_type, registry)
    pk = _require_id(resource_id)
    query = sql.SQL("SELECT * FROM {} WHERE id = %s").format(sql.Identifier(schema.table))
    if for_update:
        query = query + sql.SQL(" FOR UPDATE")
    return scope.fetch_one(query, (pk,))


def create_resource(
    scope: TransactionScope,
    resource_type: str,
    payload: Mapping[str, Any],
    registry: ResourceRegistry | None = None,
) -> dict[str, Any]:
    """Insert a row from the whitelisted subset of payload and return it.

    Raises:
        NoValidColumns: payload contains no create-allowed column.
        PersistenceConflict: the database rejected the row.
    """
    schema = _schema(resource_type, registry)
    values = schema.filter_columns(payload, "create")
    if not values:
        raise NoValidColumns(schema.name, "create")
    query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
        sql.Identifier(schema.table),
        sql.SQL(", ").join(map(sql.Identifier, values)),
        sql.SQL(", ").join(sql.Placeholder() * len(values)),
    )
    with _translate_errors(schema.name):
        row = scope.fetch_one(query, list(values.values()))
    log.debug("Created %s id=%s", schema.name, row["id"] if row else None)
    return row


def update_resource(
    scope: TransactionScope,
    resource_type: str,
    resource_id: Any,
    payload: Mapping[str, Any],
    registry: ResourceRegistry | None = None,
) -> dict[str, Any] | None:
    """Update whitelisted fields and return the updated row.

    With no whitelisted field in payload this is not an error: the current
    row is returned unchanged. Returns None when the id does not exist.
    """
    schema = _schema(resource_type, registry)
    pk = _require_id(resource_id)
    values = schema.filter_columns(payload, "update")
    if not values:
        log.debug("Update on %s id=%s has no updatable fields", schema.name, pk)
        return find_resource_by_id(scope, schema.name, pk, registry=registry)
    query = sql.SQL("UPDATE {} SET {} WHERE id = {} RETURNING *").format(
        sql.Identifier(schema.table),
        _assignments(values, schema),
        sql.Placeholder(),
    )
    with _translate_errors(schema.name):
        return scope.fetch_one(query, [*values.values(), pk])


def delete_resource(
    scope: TransactionScope,
    resource_type: str,
    resource_id: Any,
    registry: ResourceRegistry | None = None,
) -> dict[str, Any] | None:
    """Delete by id; return the deleted row or None when nothing existed."""
    schema = _schema(resource_type, registry)
    pk = _require_id(resource_id)
    query = sql.SQL("DELETE FROM {} WHERE id = %s RETURNING *").format(
        sql.Identifier(schema.table)
    )
    with _translate_errors(schema.name):
        return scope.fetch_one(query, (pk,))


def lookup_names(
    scope: TransactionScope,
    resource_type: str,
    ids: list[int] | None = None,
    registry: ResourceRegistry | None = None,
) -> dict[int, str]:
    """Return {id: display name} for a resource type, optionally limited to ids."""
    schema = _schema(resource_type, registry)
    query = sql.SQL("SELECT id, {} AS name FROM {}").format(
        sql.Identifier(schema.match_column), sql.Identifier(schema.table)
    )
    params: tuple[Any, ...] = ()
    if ids is not None:
        if not ids:
            return {}
        query = query + sql.SQL(" WHERE id = ANY(%s)")
        params = (list(ids),)
    return {row["id"]: row["name"] for row in scope.fetch_all(query, params)}


def format_row(
    resource_type: str,
    row: dict[str, Any] | None,
    registry: ResourceRegistry | None = None,
) -> dict[str, Any] | None:
    """Apply the resource's public formatter (presentation only)."""
    return _schema(resource_type, registry).format(row)
