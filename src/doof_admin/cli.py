"""doof_admin.cli

Unified CLI entrypoint for admin bulk operations and data cleanup.

Modes (--mode):
  bulk_add           add restaurants / dishes / neighborhoods / cities / hashtags
                     from a JSON or CSV file (--input-path)
  bulk_update        update rows of --resource-type from a JSON or CSV file
  bulk_delete        delete rows of --resource-type by --ids (or JSON file)
  analyze            propose data-quality changes for --resource-type
  apply              apply proposed changes (--change-id / --change-ids-path)
  reject             reject proposed changes
  approve_submission create the item described by --submission-id
  reject_submission  reject --submission-id with --reason

Usage (bulk_add):
    python -m doof_admin.cli \\
        --mode bulk_add \\
        --db-dsn "$DOOF_DB_DSN" \\
        --input-path imports/restaurants.csv \\
        --rejects-path artifacts/rejects/restaurants_rejects.csv

Usage (analyze, then apply):
    python -m doof_admin.cli --mode analyze --resource-type restaurants \\
        --output-path artifacts/proposals/restaurants.json
    python -m doof_admin.cli --mode apply --resource-type restaurants \\
        --change-id "restaurants:12:name:field_cleanup"
"""

from __future__ import annotations

import csv
import json
import logging
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import click

from doof_admin.admin_rules import RuleSetValidationError
from doof_admin.bulk_mutations import build_mutation_report, run_bulk_delete, run_bulk_update
from doof_admin.bulk_processor import (
    ItemStatus,
    build_bulk_report,
    read_items_file,
    run_bulk_add,
)
from doof_admin.data_cleanup import (
    apply_changes,
    build_cleanup_report,
    reject_changes,
    run_analyze,
    summarize_proposals,
    summarize_results,
)
from doof_admin.db import DSN_ENV_VAR, open_pool
from doof_admin.resource_registry import ResourceRegistry, default_registry
from doof_admin.shared import AdminError, RejectWriter, write_run_report
from doof_admin.submission_review import approve_submission, reject_submission

log = logging.getLogger(__name__)

MODES = [
    "bulk_add", "bulk_update", "bulk_delete",
    "analyze", "apply", "reject",
    "approve_submission", "reject_submission",
]

_RESOURCE_MODES = frozenset({"bulk_update", "bulk_delete", "analyze", "apply", "reject"})


@dataclass
class ReviewCounters:
    """Report payload for single-submission review modes."""

    submission_id: int
    action: str
    found: bool = False
    response: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "action": self.action,
            "found": self.found,
            "response": self.response,
        }


# ---------------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------------

def _read_records(path: Path, key: str) -> list[Any]:
    """Read a JSON list (or {key: [...]}) or CSV rows with blank cells dropped."""
    if path.suffix.lower() == ".json":
        data = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(data, dict):
            data = data.get(key)
        if not isinstance(data, list):
            raise ValueError(f"{path}: expected a JSON list or an object with '{key}'")
        return data
    with path.open(newline="", encoding="utf-8") as fh:
        reader = csv.DictReader(fh)
        if reader.fieldnames is None:
            raise ValueError(f"CSV is empty or has no header: {path}")
        return [
            {k.strip(): v.strip() for k, v in row.items() if k and v and v.strip()}
            for row in reader
        ]


def _read_change_ids(change_ids: tuple[str, ...], change_ids_path: str | None) -> list[str]:
    ids = list(change_ids)
    if change_ids_path:
        path = Path(change_ids_path)
        if path.suffix.lower() == ".json":
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                data = data.get("changeIds")
            if not isinstance(data, list):
                raise ValueError(f"{path}: expected a JSON list or an object with 'changeIds'")
            ids.extend(str(c) for c in data)
        else:
            ids.extend(
                line.strip() for line in path.read_text(encoding="utf-8").splitlines()
                if line.strip()
            )
    return ids


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _write_output(output_path: str | None, payload: Any) -> None:
    if not output_path:
        return
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option("--mode", required=True, type=click.Choice(MODES), help="Admin operation")
@click.option("--db-dsn", envvar=DSN_ENV_VAR, required=True, help=f"PostgreSQL DSN (or ${DSN_ENV_VAR})")
@click.option("--resource-type", default=None, help="[bulk_update|bulk_delete|analyze|apply|reject] Resource type")
@click.option("--input-path", default=None, type=click.Path(), help="[bulk_add|bulk_update|bulk_delete] JSON or CSV input")
@click.option("--ids", multiple=True, type=int, help="[bulk_delete] Id to delete (repeatable)")
@click.option("--change-id", "change_ids", multiple=True, help="[apply|reject] Change id (repeatable)")
@click.option("--change-ids-path", default=None, type=click.Path(), help="[apply|reject] File of change ids (JSON list or one per line)")
@click.option("--submission-id", default=None, type=int, help="[approve_submission|reject_submission] Submission id")
@click.option("--reviewer-id", default=None, type=int, help="[approve_submission|reject_submission] Reviewing admin user id")
@click.option("--reason", default=None, help="[reject_submission] Rejection reason")
@click.option("--rule-file", default=None, type=click.Path(), help="YAML rule file (default config/admin_rules.yml)")
@click.option("--statement-timeout-ms", default=None, type=int, help="Per-statement timeout for pooled connections")
# shared flags
@click.option("--dry-run", is_flag=True, default=False, help="[bulk_*] Roll back instead of committing")
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/bulk_add_rejects.csv",
    show_default=True,
    help="[bulk_add] CSV of items that errored or need review",
)
@click.option("--output-path", default=None, type=click.Path(), help="Write the JSON response here")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str,
    resource_type: str | None,
    input_path: str | None,
    ids: tuple[int, ...],
    change_ids: tuple[str, ...],
    change_ids_path: str | None,
    submission_id: int | None,
    reviewer_id: int | None,
    reason: str | None,
    rule_file: str | None,
    statement_timeout_ms: int | None,
    dry_run: bool,
    rejects_path: str,
    output_path: str | None,
    run_id: str | None,
    log_level: str,
) -> None:
    """Unified Doof admin CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    try:
        registry = default_registry(Path(rule_file) if rule_file else None)
    except (RuleSetValidationError, FileNotFoundError) as exc:
        _fatal(run_id, f"invalid rule file: {exc}")

    if mode in _RESOURCE_MODES and not resource_type:
        _fatal(run_id, f"{mode} mode requires: --resource-type")
    if resource_type and resource_type not in registry:
        _fatal(run_id, f"unsupported resource type {resource_type!r}; "
                       f"expected one of {', '.join(registry.resource_types())}")
    if mode in ("bulk_add", "bulk_update") and not input_path:
        _fatal(run_id, f"{mode} mode requires: --input-path")
    if input_path and not Path(input_path).exists():
        _fatal(run_id, f"--input-path not found: {input_path}")
    if mode == "bulk_delete" and not ids and not input_path:
        _fatal(run_id, "bulk_delete mode requires: --ids or --input-path")
    if mode in ("apply", "reject") and not change_ids and not change_ids_path:
        _fatal(run_id, f"{mode} mode requires: --change-id or --change-ids-path")
    if mode in ("approve_submission", "reject_submission") and submission_id is None:
        _fatal(run_id, f"{mode} mode requires: --submission-id")

    pool = open_pool(db_dsn, statement_timeout_ms=statement_timeout_ms)
    try:
        counters, response, report, failed = _dispatch(
            mode, pool, registry, run_id,
            resource_type=resource_type,
            input_path=input_path,
            ids=ids,
            change_ids=change_ids,
            change_ids_path=change_ids_path,
            submission_id=submission_id,
            reviewer_id=reviewer_id,
            reason=reason,
            dry_run=dry_run,
            rejects_path=rejects_path,
        )
    except (AdminError, ValueError) as exc:
        _fatal(run_id, str(exc))
    finally:
        pool.close()

    click.echo(report)
    _write_output(output_path, response)
    report_path = write_run_report(
        run_id, started_at, mode, dry_run,
        {
            "resource_type": resource_type,
            "input_path": input_path,
            "output_path": output_path,
            "rule_file": rule_file,
            "rule_hash": registry.rules.yaml_hash,
        },
        counters,
    )
    click.echo(f"[{run_id}] Report written to {report_path}")
    if failed:
        sys.exit(1)


def _dispatch(
    mode: str,
    pool: Any,
    registry: ResourceRegistry,
    run_id: str,
    **opts: Any,
) -> tuple[Any, Any, str, bool]:
    """Run one mode; returns (counters, JSON response, text report, failed)."""
    dry_run = opts["dry_run"]

    if mode == "bulk_add":
        items = read_items_file(opts["input_path"])
        click.echo(f"[{run_id}] Pre-scan: {len(items)} item(s) read")
        result = run_bulk_add(pool, items, dry_run=dry_run, registry=registry)
        with RejectWriter(Path(opts["rejects_path"])) as rejects:
            for outcome in result.details:
                if outcome.status not in (ItemStatus.ERROR, ItemStatus.REVIEW_NEEDED):
                    continue
                rejects.write(
                    {
                        "line": outcome.item.line,
                        "type": outcome.item.type,
                        "name": outcome.item.name,
                        "status": outcome.status.value,
                        "suggestions": json.dumps([c.to_dict() for c in outcome.suggestions]),
                    },
                    outcome.reason or "",
                )
        if rejects.rows_written:
            click.echo(f"[{run_id}] {rejects.rows_written} item(s) written to {opts['rejects_path']}")
        if dry_run:
            click.echo(f"[{run_id}] DRY RUN: rolled back.")
        return result, result.to_dict(), build_bulk_report(result, dry_run), bool(result.transaction_error)

    if mode == "bulk_update":
        updates = _read_records(Path(opts["input_path"]), "updates")
        ctrs = run_bulk_update(pool, opts["resource_type"], updates, dry_run=dry_run, registry=registry)
        return ctrs, ctrs.to_dict(), build_mutation_report(ctrs, dry_run), bool(ctrs.transaction_error)

    if mode == "bulk_delete":
        ids: list[Any] = list(opts["ids"])
        if opts["input_path"]:
            ids.extend(_read_records(Path(opts["input_path"]), "ids"))
        ctrs = run_bulk_delete(pool, opts["resource_type"], ids, dry_run=dry_run, registry=registry)
        return ctrs, ctrs.to_dict(), build_mutation_report(ctrs, dry_run), bool(ctrs.transaction_error)

    if mode == "analyze":
        proposals = run_analyze(pool, opts["resource_type"], registry=registry)
        ctrs = summarize_proposals(registry.lookup(opts["resource_type"]).name, proposals)
        return ctrs, [p.to_dict() for p in proposals], build_cleanup_report(ctrs), False

    if mode in ("apply", "reject"):
        change_ids = _read_change_ids(opts["change_ids"], opts["change_ids_path"])
        runner = apply_changes if mode == "apply" else reject_changes
        results = runner(pool, opts["resource_type"], change_ids, registry=registry)
        ctrs = summarize_results(mode, registry.lookup(opts["resource_type"]).name, results)
        return ctrs, [r.to_dict() for r in results], build_cleanup_report(ctrs), ctrs.changes_failed > 0

    submission_id = opts["submission_id"]
    if mode == "approve_submission":
        response = approve_submission(
            pool, submission_id, reviewer_id=opts["reviewer_id"], registry=registry
        )
    else:
        response = reject_submission(
            pool, submission_id, reason=opts["reason"],
            reviewer_id=opts["reviewer_id"], registry=registry,
        )
    ctrs = ReviewCounters(
        submission_id=submission_id, action=mode,
        found=response is not None, response=response or {},
    )
    status = "done" if response is not None else "not found or already decided"
    return ctrs, response, f"[{run_id}] {mode} {submission_id}: {status}", response is None


if __name__ == "__main__":
    main()
