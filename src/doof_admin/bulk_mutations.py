"""doof_admin.bulk_mutations

Bulk update (--mode bulk_update) and bulk delete (--mode bulk_delete) over
any registered resource type.

Both run in one transaction with a SAVEPOINT per entry: an entry that fails
(unknown id, constraint violation, invalid value) is counted and skipped
while the rest of the batch commits. A connection-level failure rolls back
the whole batch and every entry counts as failed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import psycopg
from psycopg_pool import ConnectionPool

from doof_admin.db import CONNECTION_ERRORS, TransactionScope, connection_scope
from doof_admin.normalize import parse_positive_int
from doof_admin.resource_crud import delete_resource, update_resource
from doof_admin.resource_registry import ResourceRegistry, ResourceSchema, default_registry
from doof_admin.shared import PersistenceConflict, ValidationError, truncate_reason

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class BulkMutationCounters:
    operation: str
    resource_type: str
    requested: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    transaction_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "resource_type": self.resource_type,
            "requested": self.requested,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "transaction_error": self.transaction_error,
            "errors": self.errors[:50],
        }


# ---------------------------------------------------------------------------
# Shared runner
# ---------------------------------------------------------------------------

def _fail_all(ctrs: BulkMutationCounters, reason: str) -> BulkMutationCounters:
    ctrs.transaction_error = truncate_reason(reason)
    ctrs.succeeded = 0
    ctrs.failed = ctrs.requested
    log.error("Bulk %s on %s rolled back: %s", ctrs.operation, ctrs.resource_type, reason)
    return ctrs


def _run_entries(
    pool: ConnectionPool,
    ctrs: BulkMutationCounters,
    entries: list[Any],
    apply_entry: Callable[[TransactionScope, Any], None],
    dry_run: bool,
) -> BulkMutationCounters:
    ctrs.requested = len(entries)
    with connection_scope(pool) as scope:
        try:
            for idx, entry in enumerate(entries, start=1):
                try:
                    with scope.savepoint(f"bulk_{ctrs.operation}"):
                        apply_entry(scope, entry)
                    ctrs.succeeded += 1
                except CONNECTION_ERRORS:
                    raise
                except (ValidationError, PersistenceConflict, psycopg.Error) as exc:
                    ctrs.failed += 1
                    ctrs.errors.append(truncate_reason(f"entry {idx}: {exc}"))
        except CONNECTION_ERRORS as exc:
            return _fail_all(ctrs, f"Transaction failed: {exc}")
        try:
            if dry_run:
                scope.rollback()
            else:
                scope.commit()
        except psycopg.Error as exc:
            return _fail_all(ctrs, f"Transaction failed at commit: {exc}")

    log.info(
        "Bulk %s on %s finished: %d succeeded, %d failed",
        ctrs.operation, ctrs.resource_type, ctrs.succeeded, ctrs.failed,
    )
    return ctrs


def _schema(resource_type: str, registry: ResourceRegistry | None) -> ResourceSchema:
    return (registry or default_registry()).lookup(resource_type)


# ---------------------------------------------------------------------------
# Bulk update
# ---------------------------------------------------------------------------

def run_bulk_update(
    pool: ConnectionPool,
    resource_type: str,
    updates: list[Mapping[str, Any]],
    dry_run: bool = False,
    registry: ResourceRegistry | None = None,
) -> BulkMutationCounters:
    """Apply [{id, ...fields}, ...] updates; fields outside the whitelist are ignored."""
    schema = _schema(resource_type, registry)
    if not isinstance(updates, list) or not updates:
        raise ValidationError("Bulk update expects a non-empty list of updates")

    def apply_update(scope: TransactionScope, update: Any) -> None:
        if not isinstance(update, Mapping):
            raise ValidationError("Each update must be an object with an id")
        if update.get("id") is None:
            raise ValidationError("Each update must include an id")
        fields = {k: v for k, v in update.items() if k != "id"}
        row = update_resource(scope, schema.name, update["id"], fields, registry=registry)
        if row is None:
            raise ValidationError(f"{schema.name} with ID {update['id']} not found")

    ctrs = BulkMutationCounters(operation="update", resource_type=schema.name)
    return _run_entries(pool, ctrs, updates, apply_update, dry_run)


# ---------------------------------------------------------------------------
# Bulk delete
# ---------------------------------------------------------------------------

def run_bulk_delete(
    pool: ConnectionPool,
    resource_type: str,
    ids: list[Any],
    dry_run: bool = False,
    registry: ResourceRegistry | None = None,
) -> BulkMutationCounters:
    """Delete rows by id. All ids must be positive integers before anything runs."""
    schema = _schema(resource_type, registry)
    if not isinstance(ids, list) or not ids:
        raise ValidationError("Bulk delete expects a non-empty list of ids")
    try:
        parsed = [parse_positive_int(i) for i in ids]
    except ValueError as exc:
        raise ValidationError(f"All IDs must be positive integers: {exc}") from exc
    if any(pk is None for pk in parsed):
        raise ValidationError("All IDs must be positive integers")

    def apply_delete(scope: TransactionScope, pk: int) -> None:
        if delete_resource(scope, schema.name, pk, registry=registry) is None:
            raise ValidationError(f"{schema.name} with ID {pk} not found")

    ctrs = BulkMutationCounters(operation="delete", resource_type=schema.name)
    return _run_entries(pool, ctrs, parsed, apply_delete, dry_run)


def build_mutation_report(ctrs: BulkMutationCounters, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        f"Bulk {ctrs.operation.capitalize()} Report ({ctrs.resource_type})",
        f"  dry_run: {dry_run}",
        "=" * 60,
        f"  requested:                      {ctrs.requested}",
        f"  succeeded:                      {ctrs.succeeded}",
        f"  failed:                         {ctrs.failed}",
    ]
    if ctrs.transaction_error:
        lines.append(f"\nTransaction failure: {ctrs.transaction_error}")
    if ctrs.errors:
        lines.append(f"\nErrors ({len(ctrs.errors)}):")
        for e in ctrs.errors[:20]:
            lines.append(f"  {e}")
        if len(ctrs.errors) > 20:
            lines.append(f"  ... and {len(ctrs.errors) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)
