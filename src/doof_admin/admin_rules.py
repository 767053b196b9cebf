"""doof_admin.admin_rules

YAML-based rule configuration for the admin engine.

Responsibilities:
  - Load and validate the rule file (config/admin_rules.yml by default)
  - Expose fuzzy-matcher thresholds, globally and per resource type
  - Expose per-field cleanup rules consumed by the resource registry
  - Hash YAML content for traceability in run reports

Usage:
    from pathlib import Path
    from doof_admin.admin_rules import load_admin_rules

    rules = load_admin_rules(Path("config/admin_rules.yml"))
    settings = rules.match_settings("restaurants")
    field_rules = rules.cleanup["restaurants"]["name"]
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_RULE_FILE = Path(__file__).parent.parent.parent / "config" / "admin_rules.yml"

REQUIRED_YAML_KEYS = frozenset({"version", "matching", "cleanup"})

REQUIRED_MATCHING_KEYS = frozenset({"similarity_floor", "confident_threshold", "candidate_limit"})

BOOLEAN_RULES = ("trim", "collapse_space", "lowercase", "title_case", "phone_format", "url_prefix")
VALID_RULE_NAMES = frozenset(BOOLEAN_RULES) | {"truncate"}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RuleSetValidationError(ValueError):
    """Raised when the YAML rule file fails schema validation."""


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MatchSettings:
    """Thresholds for approximate name matching."""

    similarity_floor: float = 0.2
    confident_threshold: float = 0.9
    candidate_limit: int = 5


@dataclass(frozen=True)
class FieldRules:
    """Normalization rules for a single column, applied in a fixed order."""

    trim: bool = False
    collapse_space: bool = False
    lowercase: bool = False
    title_case: bool = False
    phone_format: bool = False
    url_prefix: bool = False
    truncate: int | None = None

    def enabled(self) -> list[str]:
        names = [name for name in BOOLEAN_RULES if getattr(self, name)]
        if self.truncate is not None:
            names.append("truncate")
        return names


@dataclass
class AdminRules:
    """Parsed, validated admin rule file."""

    version: str
    yaml_hash: str
    matching: MatchSettings
    matching_overrides: dict[str, MatchSettings]
    cleanup: dict[str, dict[str, FieldRules]]
    raw_yaml: str = field(repr=False, default="")

    def match_settings(self, resource_type: str | None = None) -> MatchSettings:
        if resource_type is None:
            return self.matching
        return self.matching_overrides.get(resource_type, self.matching)


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_admin_rules(yaml_path: Path | None = None) -> AdminRules:
    """Load, validate, and return AdminRules from a YAML file.

    Args:
        yaml_path: Path to the rule file; defaults to config/admin_rules.yml.

    Raises:
        RuleSetValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    path = Path(yaml_path) if yaml_path is not None else DEFAULT_RULE_FILE
    raw = path.read_text(encoding="utf-8")
    return parse_admin_rules(raw)


def parse_admin_rules(raw: str) -> AdminRules:
    """Validate and build AdminRules from YAML text."""
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_admin_rules(data)
    yaml_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()

    matching = _build_match_settings(data["matching"], MatchSettings())
    overrides = {
        resource: _build_match_settings(values or {}, matching)
        for resource, values in (data["matching"].get("overrides") or {}).items()
    }
    cleanup = {
        resource: {
            column: _build_field_rules(rules or {})
            for column, rules in (fields or {}).items()
        }
        for resource, fields in (data.get("cleanup") or {}).items()
    }
    return AdminRules(
        version=str(data["version"]),
        yaml_hash=yaml_hash,
        matching=matching,
        matching_overrides=overrides,
        cleanup=cleanup,
        raw_yaml=raw,
    )


def validate_admin_rules(data: dict[str, Any]) -> None:
    """Raise RuleSetValidationError if data does not match the required schema.

    Validates:
      - Required top-level keys present
      - matching thresholds numeric, in [0.0, 1.0], floor <= confident
      - candidate_limit a positive integer
      - cleanup rule names known, truncate a positive integer
    """
    if not isinstance(data, dict):
        raise RuleSetValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise RuleSetValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    matching = data.get("matching")
    if not isinstance(matching, dict):
        raise RuleSetValidationError("'matching' must be a mapping.")
    missing_matching = REQUIRED_MATCHING_KEYS - set(matching.keys())
    if missing_matching:
        raise RuleSetValidationError(f"Missing matching keys: {sorted(missing_matching)}")
    _validate_matching_block("matching", matching)

    overrides = matching.get("overrides") or {}
    if not isinstance(overrides, dict):
        raise RuleSetValidationError("'matching.overrides' must be a mapping.")
    for resource, values in overrides.items():
        if not isinstance(values, dict):
            raise RuleSetValidationError(f"'matching.overrides.{resource}' must be a mapping.")
        unknown = set(values.keys()) - REQUIRED_MATCHING_KEYS
        if unknown:
            raise RuleSetValidationError(
                f"Unknown keys in matching.overrides.{resource}: {sorted(unknown)}"
            )
        _validate_matching_block(f"matching.overrides.{resource}", {**matching, **values})

    cleanup = data.get("cleanup") or {}
    if not isinstance(cleanup, dict):
        raise RuleSetValidationError("'cleanup' must be a mapping.")
    for resource, fields in cleanup.items():
        if not isinstance(fields, dict):
            raise RuleSetValidationError(f"'cleanup.{resource}' must be a mapping of fields.")
        for column, rules in fields.items():
            if not isinstance(rules, dict) or not rules:
                raise RuleSetValidationError(
                    f"'cleanup.{resource}.{column}' must be a non-empty mapping of rules."
                )
            unknown = set(rules.keys()) - VALID_RULE_NAMES
            if unknown:
                raise RuleSetValidationError(
                    f"Unknown cleanup rule(s) for {resource}.{column}: {sorted(unknown)}. "
                    f"Must be one of {sorted(VALID_RULE_NAMES)}."
                )
            for name, value in rules.items():
                if name == "truncate":
                    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                        raise RuleSetValidationError(
                            f"'truncate' for {resource}.{column} must be a positive integer."
                        )
                elif not isinstance(value, bool):
                    raise RuleSetValidationError(
                        f"Rule '{name}' for {resource}.{column} must be true or false."
                    )


def _validate_matching_block(label: str, block: dict[str, Any]) -> None:
    for key in ("similarity_floor", "confident_threshold"):
        val = block.get(key)
        try:
            fval = float(val)
        except (TypeError, ValueError):
            raise RuleSetValidationError(f"{label}: '{key}' value '{val}' is not numeric.")
        if not (0.0 <= fval <= 1.0):
            raise RuleSetValidationError(f"{label}: '{key}' value {fval} must be in [0.0, 1.0].")

    floor = float(block["similarity_floor"])
    confident = float(block["confident_threshold"])
    if floor > confident:
        raise RuleSetValidationError(
            f"{label}: 'similarity_floor' ({floor}) must be <= 'confident_threshold' ({confident})."
        )

    limit = block.get("candidate_limit")
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise RuleSetValidationError(f"{label}: 'candidate_limit' must be a positive integer.")


def _build_match_settings(values: dict[str, Any], base: MatchSettings) -> MatchSettings:
    updates: dict[str, Any] = {}
    if "similarity_floor" in values:
        updates["similarity_floor"] = float(values["similarity_floor"])
    if "confident_threshold" in values:
        updates["confident_threshold"] = float(values["confident_threshold"])
    if "candidate_limit" in values:
        updates["candidate_limit"] = int(values["candidate_limit"])
    return replace(base, **updates)


def _build_field_rules(rules: dict[str, Any]) -> FieldRules:
    return FieldRules(
        **{name: bool(rules.get(name, False)) for name in BOOLEAN_RULES},
        truncate=rules.get("truncate"),
    )
