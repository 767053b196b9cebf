"""Unit tests for admin_rules: YAML loading, validation, match settings."""

from __future__ import annotations

import hashlib

import pytest
import yaml

from doof_admin.admin_rules import (
    DEFAULT_RULE_FILE,
    FieldRules,
    MatchSettings,
    RuleSetValidationError,
    load_admin_rules,
    parse_admin_rules,
    validate_admin_rules,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

VALID_YAML = """
version: "1"
matching:
  similarity_floor: 0.2
  confident_threshold: 0.9
  candidate_limit: 5
  overrides:
    dishes:
      confident_threshold: 0.95
cleanup:
  restaurants:
    name:
      trim: true
      title_case: true
      truncate: 100
"""


def _valid_data() -> dict:
    return yaml.safe_load(VALID_YAML)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

class TestLoadAdminRules:
    def test_default_file_loads(self):
        rules = load_admin_rules()
        assert DEFAULT_RULE_FILE.exists()
        assert rules.matching == MatchSettings(0.2, 0.9, 5)
        assert rules.cleanup["restaurants"]["name"].title_case is True

    def test_yaml_hash(self, tmp_path):
        p = tmp_path / "rules.yml"
        p.write_text(VALID_YAML, encoding="utf-8")
        rules = load_admin_rules(p)
        assert rules.yaml_hash == hashlib.sha256(VALID_YAML.encode("utf-8")).hexdigest()
        assert rules.version == "1"

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_admin_rules(tmp_path / "nope.yml")

    def test_field_rules_parsed(self):
        rules = parse_admin_rules(VALID_YAML)
        name_rules = rules.cleanup["restaurants"]["name"]
        assert name_rules == FieldRules(trim=True, title_case=True, truncate=100)
        assert name_rules.enabled() == ["trim", "title_case", "truncate"]


class TestMatchSettings:
    def test_global_defaults(self):
        rules = parse_admin_rules(VALID_YAML)
        assert rules.match_settings() == MatchSettings(0.2, 0.9, 5)
        assert rules.match_settings("restaurants") == MatchSettings(0.2, 0.9, 5)

    def test_override_inherits_unset_values(self):
        rules = parse_admin_rules(VALID_YAML)
        dishes = rules.match_settings("dishes")
        assert dishes.confident_threshold == 0.95
        assert dishes.similarity_floor == 0.2
        assert dishes.candidate_limit == 5


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidateAdminRules:
    def test_valid_passes(self):
        validate_admin_rules(_valid_data())

    def test_root_not_mapping(self):
        with pytest.raises(RuleSetValidationError, match="mapping"):
            validate_admin_rules(["not", "a", "dict"])  # type: ignore[arg-type]

    def test_missing_top_level_key(self):
        data = _valid_data()
        del data["cleanup"]
        with pytest.raises(RuleSetValidationError, match="Missing required YAML keys"):
            validate_admin_rules(data)

    def test_missing_matching_key(self):
        data = _valid_data()
        del data["matching"]["candidate_limit"]
        with pytest.raises(RuleSetValidationError, match="Missing matching keys"):
            validate_admin_rules(data)

    def test_threshold_out_of_range(self):
        data = _valid_data()
        data["matching"]["confident_threshold"] = 1.5
        with pytest.raises(RuleSetValidationError, match=r"\[0.0, 1.0\]"):
            validate_admin_rules(data)

    def test_threshold_not_numeric(self):
        data = _valid_data()
        data["matching"]["similarity_floor"] = "low"
        with pytest.raises(RuleSetValidationError, match="not numeric"):
            validate_admin_rules(data)

    def test_floor_above_confident(self):
        data = _valid_data()
        data["matching"]["similarity_floor"] = 0.95
        with pytest.raises(RuleSetValidationError, match="must be <="):
            validate_admin_rules(data)

    def test_override_floor_above_confident(self):
        data = _valid_data()
        data["matching"]["overrides"]["dishes"] = {"confident_threshold": 0.1}
        with pytest.raises(RuleSetValidationError, match="overrides.dishes"):
            validate_admin_rules(data)

    def test_override_unknown_key(self):
        data = _valid_data()
        data["matching"]["overrides"]["dishes"] = {"threshold": 0.5}
        with pytest.raises(RuleSetValidationError, match="Unknown keys"):
            validate_admin_rules(data)

    @pytest.mark.parametrize("limit", [0, -3, "5", True])
    def test_candidate_limit_must_be_positive_int(self, limit):
        data = _valid_data()
        data["matching"]["candidate_limit"] = limit
        with pytest.raises(RuleSetValidationError, match="candidate_limit"):
            validate_admin_rules(data)

    def test_unknown_cleanup_rule(self):
        data = _valid_data()
        data["cleanup"]["restaurants"]["name"]["uppercase"] = True
        with pytest.raises(RuleSetValidationError, match="Unknown cleanup rule"):
            validate_admin_rules(data)

    def test_truncate_must_be_positive(self):
        data = _valid_data()
        data["cleanup"]["restaurants"]["name"]["truncate"] = 0
        with pytest.raises(RuleSetValidationError, match="truncate"):
            validate_admin_rules(data)

    def test_boolean_rule_must_be_bool(self):
        data = _valid_data()
        data["cleanup"]["restaurants"]["name"]["trim"] = "yes"
        with pytest.raises(RuleSetValidationError, match="true or false"):
            validate_admin_rules(data)

    def test_empty_field_rules(self):
        data = _valid_data()
        data["cleanup"]["restaurants"]["name"] = {}
        with pytest.raises(RuleSetValidationError, match="non-empty"):
            validate_admin_rules(data)
