"""doof_admin.shared

Shared utilities used by every admin mode.
Includes the exception taxonomy, RejectWriter, and report-writing support.
"""

from __future__ import annotations

import csv
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

# Outcome reasons and change messages are capped at this many characters.
MAX_REASON_LENGTH = 200


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class AdminError(Exception):
    """Base class for admin engine errors."""


class UnsupportedResourceType(AdminError, LookupError):
    """Raised when a resource-type name is not in the registry."""

    def __init__(self, resource_type: str) -> None:
        super().__init__(f"Unsupported resource type: {resource_type!r}")
        self.resource_type = resource_type


class ValidationError(AdminError, ValueError):
    """Raised when an input fails validation; recorded per item in bulk runs."""


class NoValidColumns(ValidationError):
    """Raised when a create payload contains no whitelisted column."""

    def __init__(self, resource_type: str, mode: str = "create") -> None:
        super().__init__(f"No valid columns provided for {mode} on {resource_type}")
        self.resource_type = resource_type


class PersistenceConflict(AdminError):
    """Raised when the database rejects a write (unique, foreign key, check)."""

    def __init__(self, message: str, field: str | None = None, constraint: str | None = None) -> None:
        super().__init__(message)
        self.field = field
        self.constraint = constraint


class TransactionFailure(AdminError):
    """Raised when the connection or transaction itself fails; aborts a batch."""


class InvalidStatusTransition(AdminError, ValueError):
    """Raised on an illegal ItemStatus transition."""


def truncate_reason(message: Any) -> str:
    text = str(message)
    if len(text) <= MAX_REASON_LENGTH:
        return text
    return text[: MAX_REASON_LENGTH - 3] + "..."


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """CSV sink for bulk items that were not added.

    The file is created on the first write, so a clean run leaves nothing
    behind. Columns are fixed; keys outside REJECT_COLUMNS are ignored.
    """

    REJECT_COLUMNS = ("line", "type", "name", "status", "reason", "suggestions")

    def __init__(self, path: Path) -> None:
        self.path = path
        self._fh = None
        self._writer: csv.DictWriter | None = None
        self.rows_written = 0

    def __enter__(self) -> "RejectWriter":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._writer is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = self.path.open("w", newline="", encoding="utf-8")
            self._writer = csv.DictWriter(self._fh, fieldnames=self.REJECT_COLUMNS, extrasaction="ignore")
            self._writer.writeheader()
        self._writer.writerow({**row, "reason": truncate_reason(reason)})
        self._fh.flush()
        self.rows_written += 1

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

class SupportsToDict(Protocol):
    def to_dict(self) -> dict[str, Any]: ...


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, Any],
    counters: SupportsToDict,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
