"""doof_admin.submission_review

Approve or reject user submissions (--mode approve_submission |
reject_submission).

Approving turns the submission into a restaurant or dish through the same
validation and reference resolution as bulk add (city and restaurant names
go through the fuzzy matcher), then marks the submission approved with the
created id. Everything happens in one transaction: if the item cannot be
created the submission stays untouched.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from psycopg_pool import ConnectionPool

from doof_admin.bulk_processor import BulkItem, BulkProcessor, ItemStatus
from doof_admin.db import connection_scope
from doof_admin.matcher import Matcher, find_approximate
from doof_admin.normalize import split_tags
from doof_admin.resource_crud import find_resource_by_id, update_resource
from doof_admin.resource_registry import ResourceRegistry, default_registry
from doof_admin.shared import ValidationError

log = logging.getLogger(__name__)

_APPROVABLE_STATUSES = frozenset({"pending", "needs_review"})
# rejection_pending is queued by data_cleanup.reject_changes; reject_submission finalizes it.
_REJECTABLE_STATUSES = _APPROVABLE_STATUSES | {"rejection_pending"}


def _submission_item(submission: dict[str, Any]) -> BulkItem:
    payload: dict[str, Any] = {}
    if submission["type"] == "restaurant":
        payload = {
            "city": submission.get("city"),
            "neighborhood": submission.get("neighborhood"),
            "address": submission.get("location"),
            "google_place_id": submission.get("place_id"),
        }
    elif submission["type"] == "dish":
        payload = {
            "restaurant_id": submission.get("restaurant_id"),
            "restaurant_name": submission.get("restaurant_name"),
        }
    return BulkItem(
        line=1,
        type=submission["type"],
        name=submission.get("name"),
        payload={k: v for k, v in payload.items() if v is not None},
        tags=split_tags(submission.get("tags")),
    )


def approve_submission(
    pool: ConnectionPool,
    submission_id: int,
    reviewer_id: int | None = None,
    registry: ResourceRegistry | None = None,
    matcher: Matcher = find_approximate,
) -> dict[str, Any] | None:
    """Create the submitted item and mark the submission approved.

    Returns {"submission": ..., "created": ...} or None when the submission
    does not exist. An item that already exists is linked instead of created.

    Raises:
        ValidationError: the submission is not open for review, or the item
            cannot be created (invalid, ambiguous reference, conflict).
    """
    registry = registry or default_registry()
    with connection_scope(pool) as scope:
        submission = find_resource_by_id(
            scope, "submissions", submission_id, for_update=True, registry=registry
        )
        if submission is None:
            return None
        if submission["status"] not in _APPROVABLE_STATUSES:
            raise ValidationError(f"Submission {submission_id} is already {submission['status']}")

        item = _submission_item(submission)
        result = BulkProcessor(scope, registry=registry, matcher=matcher).process([item])
        outcome = result.details[0]
        if outcome.status not in (ItemStatus.ADDED, ItemStatus.SKIPPED):
            raise ValidationError(
                f"Cannot approve submission {submission_id}: {outcome.reason}"
            )

        link_column = "restaurant_id" if submission["type"] == "restaurant" else "dish_id"
        updated = update_resource(
            scope, "submissions", submission_id,
            {
                "status": "approved",
                "reviewed_by": reviewer_id,
                "reviewed_at": datetime.now(timezone.utc),
                link_column: outcome.id,
            },
            registry=registry,
        )
        scope.commit()

    log.info(
        "Approved submission %s as %s id=%s (%s)",
        submission_id, submission["type"], outcome.id, outcome.status.value,
    )
    return {
        "submission": registry.lookup("submissions").format(updated),
        "created": outcome.to_dict(),
    }


def reject_submission(
    pool: ConnectionPool,
    submission_id: int,
    reason: str | None = None,
    reviewer_id: int | None = None,
    registry: ResourceRegistry | None = None,
) -> dict[str, Any] | None:
    """Mark an open submission rejected; None when missing or already decided."""
    registry = registry or default_registry()
    with connection_scope(pool) as scope:
        submission = find_resource_by_id(
            scope, "submissions", submission_id, for_update=True, registry=registry
        )
        if submission is None or submission["status"] not in _REJECTABLE_STATUSES:
            return None
        updated = update_resource(
            scope, "submissions", submission_id,
            {
                "status": "rejected",
                "rejection_reason": reason,
                "reviewed_by": reviewer_id,
                "reviewed_at": datetime.now(timezone.utc),
            },
            registry=registry,
        )
        scope.commit()
    log.info("Rejected submission %s", submission_id)
    return registry.lookup("submissions").format(updated)
