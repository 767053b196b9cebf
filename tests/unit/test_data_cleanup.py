"""Unit tests for data_cleanup: change ids, field rules, analyze/apply/reject."""

from __future__ import annotations

import pytest

from doof_admin import data_cleanup
from doof_admin.admin_rules import FieldRules, parse_admin_rules
from doof_admin.data_cleanup import (
    ALL_ROWS,
    ChangeRef,
    ChangeResult,
    analyze,
    apply_changes,
    apply_field_rules,
    build_change_id,
    build_cleanup_report,
    parse_change_id,
    reject_changes,
    summarize_proposals,
    summarize_results,
)
from doof_admin.resource_registry import build_registry
from doof_admin.shared import ValidationError

NAME_ONLY_RULES = """
version: "1"
matching:
  similarity_floor: 0.2
  confident_threshold: 0.9
  candidate_limit: 5
cleanup:
  restaurants:
    name:
      trim: true
      title_case: true
"""


@pytest.fixture
def name_only_registry():
    return build_registry(parse_admin_rules(NAME_ONLY_RULES))


@pytest.fixture
def patched_reads(monkeypatch):
    """Patch row loading and name lookups; returns a dict to fill per test."""
    data = {"rows": [], "names": {}}
    monkeypatch.setattr(data_cleanup, "_load_rows", lambda scope, schema: data["rows"])
    monkeypatch.setattr(
        data_cleanup, "lookup_names",
        lambda scope, resource_type, ids=None, registry=None: {
            i: n for i, n in data["names"].get(resource_type, {}).items() if i in (ids or [])
        },
    )
    return data


# ---------------------------------------------------------------------------
# Change ids
# ---------------------------------------------------------------------------

class TestChangeIds:
    def test_build_single_row(self):
        assert build_change_id("restaurants", 12, "name", "field_cleanup") == "restaurants:12:name:field_cleanup"

    def test_build_all_rows(self):
        assert build_change_id("users", None, "password_hash", "hide_column") == "users:*:password_hash:hide_column"

    def test_parse(self):
        assert parse_change_id("restaurants:12:name:field_cleanup") == ChangeRef(
            "restaurants", 12, "name", "field_cleanup"
        )

    def test_parse_all_rows(self):
        assert parse_change_id(f"users:{ALL_ROWS}:password_hash:hide_column").resource_id is None

    @pytest.mark.parametrize("change_id", [
        "bogus", "restaurants:12:name", "a:b:c:d:e", "restaurants::name:field_cleanup", None, 42,
    ])
    def test_malformed(self, change_id):
        with pytest.raises(ValidationError, match="Unrecognized change id"):
            parse_change_id(change_id)

    def test_unknown_change_type(self):
        with pytest.raises(ValidationError, match="Unknown change type"):
            parse_change_id("restaurants:1:name:rename")

    @pytest.mark.parametrize("raw_id", ["0", "-1", "abc"])
    def test_invalid_resource_id(self, raw_id):
        with pytest.raises(ValidationError, match="Invalid resource id"):
            parse_change_id(f"restaurants:{raw_id}:name:field_cleanup")


# ---------------------------------------------------------------------------
# Field rules
# ---------------------------------------------------------------------------

class TestApplyFieldRules:
    def test_composes_in_order(self):
        rules = FieldRules(trim=True, collapse_space=True, title_case=True)
        value, applied = apply_field_rules("  joe's   pizza ", rules)
        assert value == "Joe's Pizza"
        assert applied == ["trim", "collapse_space", "title_case"]

    def test_clean_value_unchanged(self):
        rules = FieldRules(trim=True, title_case=True)
        assert apply_field_rules("Joe's Pizza", rules) == ("Joe's Pizza", [])

    def test_idempotent(self):
        rules = FieldRules(trim=True, collapse_space=True, phone_format=True)
        once, _ = apply_field_rules(" 212 555 1234 ", rules)
        assert apply_field_rules(once, rules) == (once, [])

    def test_lowercase_email(self):
        value, applied = apply_field_rules(" Joe@Example.com", FieldRules(trim=True, lowercase=True))
        assert value == "joe@example.com"
        assert applied == ["trim", "lowercase"]

    def test_url_prefix(self):
        assert apply_field_rules("joes.com", FieldRules(url_prefix=True)) == ("https://joes.com", ["url_prefix"])

    def test_truncate(self):
        value, applied = apply_field_rules("a" * 20, FieldRules(truncate=10))
        assert value == "aaaaaaa..."
        assert applied == ["truncate"]

    def test_non_string_passthrough(self):
        assert apply_field_rules(None, FieldRules(trim=True)) == (None, [])
        assert apply_field_rules(42, FieldRules(trim=True)) == (42, [])


# ---------------------------------------------------------------------------
# analyze
# ---------------------------------------------------------------------------

class TestAnalyze:
    def test_field_cleanup_proposal(self, scope, patched_reads, name_only_registry):
        patched_reads["rows"] = [
            {"id": 1, "name": "  joe's pizza ", "city_id": 1, "neighborhood_id": None, "chain_id": None},
            {"id": 2, "name": "Carbone", "city_id": 1, "neighborhood_id": None, "chain_id": None},
        ]
        patched_reads["names"] = {"cities": {1: "New York"}}
        proposals = analyze(scope, "restaurants", registry=name_only_registry)

        data_changes = [p for p in proposals if not p.display_only]
        assert len(data_changes) == 1
        assert data_changes[0].to_dict() == {
            "changeId": "restaurants:1:name:field_cleanup",
            "resourceType": "restaurants",
            "resourceId": 1,
            "field": "name",
            "currentValue": "  joe's pizza ",
            "proposedValue": "Joe's Pizza",
            "changeType": "field_cleanup",
            "reason": "Applied trim, title_case",
            "confidence": 0.85,
            "displayOnly": False,
            "affectsAllRows": False,
        }

    def test_display_name_proposals(self, scope, patched_reads, name_only_registry):
        patched_reads["rows"] = [
            {"id": 1, "name": "Carbone", "city_id": 1, "neighborhood_id": 3, "chain_id": None},
        ]
        patched_reads["names"] = {"cities": {1: "New York"}, "neighborhoods": {3: "Greenwich Village"}}
        proposals = analyze(scope, "restaurants", registry=name_only_registry)
        assert [(p.field, p.proposed_value) for p in proposals] == [
            ("city_id", "New York"), ("neighborhood_id", "Greenwich Village"),
        ]
        assert all(p.display_only and not p.affects_all_rows for p in proposals)

    def test_no_proposal_equals_current(self, scope, patched_reads, name_only_registry):
        patched_reads["rows"] = [{"id": 5, "name": "Joe's Pizza", "city_id": None}]
        assert analyze(scope, "restaurants", registry=name_only_registry) == []

    def test_hidden_column_proposed_once(self, scope, patched_reads):
        patched_reads["rows"] = [
            {"id": 1, "username": "joe", "email": "joe@example.com", "password_hash": "x"},
            {"id": 2, "username": "ann", "email": "ann@example.com", "password_hash": "y"},
        ]
        proposals = analyze(scope, "users")
        hidden = [p for p in proposals if p.change_type == "hide_column"]
        assert len(hidden) == 1
        assert hidden[0].change_id == "users:*:password_hash:hide_column"
        assert hidden[0].display_only and hidden[0].affects_all_rows
        assert hidden[0].resource_id is None

    def test_user_email_cleanup(self, scope, patched_reads):
        patched_reads["rows"] = [{"id": 1, "username": "joe", "email": " Joe@Example.com"}]
        proposals = [p for p in analyze(scope, "users") if p.change_type == "field_cleanup"]
        assert [(p.field, p.proposed_value, p.confidence) for p in proposals] == [
            ("email", "joe@example.com", 0.95),
        ]

    def test_zip_lookup(self, scope, patched_reads, monkeypatch):
        calls = []

        def fake_lookup(scope, city_id, zip_code):
            calls.append((city_id, zip_code))
            return {"id": 4, "name": "Chelsea"}

        monkeypatch.setattr(data_cleanup, "_neighborhood_for_zip", fake_lookup)
        patched_reads["rows"] = [
            {"id": 1, "name": "Joe's Pizza", "city_id": 1, "neighborhood_id": None, "zip_code": "10001-1234"},
            {"id": 2, "name": "Carbone", "city_id": 1, "neighborhood_id": None, "zip_code": "10001"},
            {"id": 3, "name": "Lucali", "city_id": 1, "neighborhood_id": 7, "zip_code": "10001"},
            {"id": 4, "name": "Di Fara", "city_id": 1, "neighborhood_id": None, "zip_code": None},
        ]
        proposals = [p for p in analyze(scope, "restaurants") if p.change_type == "zip_lookup"]
        assert [p.change_id for p in proposals] == [
            "restaurants:1:neighborhood_id:zip_lookup",
            "restaurants:2:neighborhood_id:zip_lookup",
        ]
        assert proposals[0].proposed_value == 4
        assert proposals[0].current_value is None
        assert proposals[0].confidence == 0.75
        assert calls == [(1, "10001")]


# ---------------------------------------------------------------------------
# apply
# ---------------------------------------------------------------------------

class TestApplyChanges:
    def test_display_only_modifies_nothing(self, patch_connection_scope):
        scope = patch_connection_scope(data_cleanup)
        results = apply_changes(None, "restaurants", [
            "restaurants:1:city_id:display_name",
        ])
        assert results == [ChangeResult("restaurants:1:city_id:display_name", True,
                                        "Display-only change; no data modified")]
        assert scope.queries == []
        assert scope.commits == 0

    def test_hide_column(self, patch_connection_scope):
        scope = patch_connection_scope(data_cleanup)
        (result,) = apply_changes(None, "users", ["users:*:password_hash:hide_column"])
        assert result.success
        assert scope.queries == []

    def test_missing_row(self, patch_connection_scope):
        scope = patch_connection_scope(data_cleanup)
        (result,) = apply_changes(None, "restaurants", ["restaurants:999:name:field_cleanup"])
        assert result.success is False
        assert result.message == "restaurants with ID 999 not found"
        assert len(scope.queries) == 1
        assert scope.commits == 0

    def test_field_cleanup_writes_rederived_value(self, patch_connection_scope):
        scope = patch_connection_scope(data_cleanup)
        scope.one_results = [
            {"id": 1, "name": "  joe's   pizza "},
            {"id": 1, "name": "Joe's Pizza"},
        ]
        (result,) = apply_changes(None, "restaurants", ["restaurants:1:name:field_cleanup"])
        assert result.success
        _, update_params = scope.queries[1]
        assert update_params == ["Joe's Pizza", 1]
        assert scope.commits == 1

    def test_zip_lookup(self, patch_connection_scope):
        scope = patch_connection_scope(data_cleanup)
        scope.one_results = [
            {"id": 1, "name": "Joe's", "city_id": 1, "zip_code": "10001", "neighborhood_id": None},
            {"id": 4, "name": "Chelsea"},
            {"id": 1, "neighborhood_id": 4},
        ]
        (result,) = apply_changes(None, "restaurants", ["restaurants:1:neighborhood_id:zip_lookup"])
        assert result.success
        assert scope.queries[2][1] == [4, 1]

    def test_zip_lookup_without_match(self, patch_connection_scope):
        scope = patch_connection_scope(data_cleanup)
        scope.one_results = [{"id": 1, "city_id": 1, "zip_code": "99999", "neighborhood_id": None}]
        (result,) = apply_changes(None, "restaurants", ["restaurants:1:neighborhood_id:zip_lookup"])
        assert result.success is False
        assert result.message.startswith("No neighborhood found")
        assert scope.rollbacks == 1

    def test_results_in_order(self, patch_connection_scope):
        patch_connection_scope(data_cleanup)
        results = apply_changes(None, "restaurants", [
            "bogus",
            "restaurants:1:city_id:display_name",
            "dishes:1:name:field_cleanup",
            "restaurants:1:zip_code:field_cleanup",
        ])
        assert [r.success for r in results] == [False, True, False, False]
        assert "Unrecognized change id" in results[0].message
        assert "does not belong to restaurants" in results[2].message
        assert "No cleanup rules configured" in results[3].message


# ---------------------------------------------------------------------------
# reject
# ---------------------------------------------------------------------------

class TestRejectChanges:
    def test_no_status_column_is_acknowledged(self, patch_connection_scope):
        scope = patch_connection_scope(data_cleanup)
        (result,) = reject_changes(None, "restaurants", ["restaurants:1:name:field_cleanup"])
        assert result.success
        assert result.message == "Change rejected; no data modified"
        assert scope.queries == []

    def test_submission_moves_to_rejection_pending(self, patch_connection_scope):
        scope = patch_connection_scope(data_cleanup)
        scope.one_results = [{"id": 5, "status": "pending"}, {"id": 5, "status": "rejection_pending"}]
        (result,) = reject_changes(None, "submissions", ["submissions:5:name:field_cleanup"])
        assert result.success
        assert "rejection_pending" in result.message
        assert scope.queries[1][1] == ["rejection_pending", 5]
        assert scope.commits == 1

    def test_decided_submission_untouched(self, patch_connection_scope):
        scope = patch_connection_scope(data_cleanup)
        scope.one_results = [{"id": 5, "status": "approved"}]
        (result,) = reject_changes(None, "submissions", ["submissions:5:name:field_cleanup"])
        assert result.success
        assert result.message == "Change rejected; submissions already approved"
        assert len(scope.queries) == 1

    def test_malformed_id(self, patch_connection_scope):
        patch_connection_scope(data_cleanup)
        (result,) = reject_changes(None, "submissions", ["nope"])
        assert result.success is False


# ---------------------------------------------------------------------------
# Summaries and report
# ---------------------------------------------------------------------------

class TestReports:
    def test_summarize_results(self):
        ctrs = summarize_results("apply", "restaurants", [
            ChangeResult("a", True, "ok"),
            ChangeResult("b", False, "restaurants with ID 9 not found"),
        ])
        assert (ctrs.changes_requested, ctrs.changes_succeeded, ctrs.changes_failed) == (2, 1, 1)
        assert ctrs.warnings == ["b: restaurants with ID 9 not found"]
        report = build_cleanup_report(ctrs)
        assert "Data Cleanup Report (apply, restaurants)" in report
        assert "b: restaurants with ID 9 not found" in report

    def test_summarize_proposals(self, scope, patched_reads):
        patched_reads["rows"] = [{"id": 1, "username": "joe", "email": " Joe@Example.com"}]
        proposals = analyze(scope, "users")
        ctrs = summarize_proposals("users", proposals)
        assert ctrs.proposals == 2
        assert ctrs.proposals_by_type == {"hide_column": 1, "field_cleanup": 1}
        assert "hide_column:" in build_cleanup_report(ctrs)
