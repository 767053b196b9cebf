"""doof_admin.resource_registry

Closed registry of admin resource types.

Each ResourceSchema fixes, at startup, the table a resource lives in, the
columns a caller may write on create and update, its public formatter, the
filter applied when the data-quality analysis loads rows, and the cleanup
rules (from the YAML rule file) evaluated per field. Column names used to
build SQL anywhere in the engine come only from these schemas.

Usage:
    from doof_admin.resource_registry import lookup

    schema = lookup("Restaurants")
    values = schema.filter_columns(payload, "create")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from doof_admin.admin_rules import (
    AdminRules,
    FieldRules,
    MatchSettings,
    RuleSetValidationError,
    load_admin_rules,
)
from doof_admin.formatters import (
    Formatter,
    format_chain,
    format_city,
    format_dish,
    format_hashtag,
    format_list,
    format_neighborhood,
    format_restaurant,
    format_submission,
    format_user,
)
from doof_admin.shared import UnsupportedResourceType

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResourceSchema:
    """Static description of one resource type."""

    name: str
    table: str
    create_columns: tuple[str, ...]
    update_columns: tuple[str, ...]
    formatter: Formatter
    analysis_filter: str | None = None
    field_rules: Mapping[str, FieldRules] = field(default_factory=lambda: MappingProxyType({}))
    match_column: str = "name"
    scope_column: str | None = None
    display_refs: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    hidden_columns: tuple[str, ...] = ()
    status_column: str | None = None
    touches_updated_at: bool = False

    def allowed_columns(self, mode: str) -> tuple[str, ...]:
        if mode == "create":
            return self.create_columns
        if mode == "update":
            return self.update_columns
        raise ValueError(f"Unknown column mode {mode!r}; expected 'create' or 'update'.")

    def filter_columns(self, payload: Mapping[str, Any], mode: str) -> dict[str, Any]:
        """Return the whitelisted subset of payload, in schema column order."""
        return {col: payload[col] for col in self.allowed_columns(mode) if col in payload}

    def format(self, row: dict[str, Any] | None) -> dict[str, Any] | None:
        if row is None:
            return None
        return self.formatter(row)


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------

_RESTAURANT_COLUMNS = (
    "name", "city_id", "neighborhood_id", "chain_id", "address", "zip_code",
    "phone", "website", "google_place_id", "latitude", "longitude",
)

_RESOURCE_DEFINITIONS: dict[str, dict[str, Any]] = {
    "restaurants": {
        "table": "restaurants",
        "touches_updated_at": True,
        "create_columns": _RESTAURANT_COLUMNS,
        "update_columns": _RESTAURANT_COLUMNS,
        "formatter": format_restaurant,
        "scope_column": "city_id",
        "display_refs": {
            "city_id": "cities",
            "neighborhood_id": "neighborhoods",
            "chain_id": "restaurant_chains",
        },
    },
    "dishes": {
        "table": "dishes",
        "touches_updated_at": True,
        "create_columns": ("name", "restaurant_id", "description", "price"),
        "update_columns": ("name", "restaurant_id", "description", "price"),
        "formatter": format_dish,
        "scope_column": "restaurant_id",
        "display_refs": {"restaurant_id": "restaurants"},
    },
    "lists": {
        "table": "lists",
        "touches_updated_at": True,
        "create_columns": (
            "name", "description", "list_type", "is_public", "city_name",
            "tags", "user_id", "creator_handle",
        ),
        "update_columns": (
            "name", "description", "list_type", "is_public", "city_name", "tags",
        ),
        "formatter": format_list,
        "display_refs": {"user_id": "users"},
    },
    "users": {
        "table": "users",
        "create_columns": ("username", "email", "password_hash", "account_type"),
        "update_columns": ("username", "email", "account_type"),
        "formatter": format_user,
        "match_column": "username",
        "hidden_columns": ("password_hash",),
    },
    "hashtags": {
        "table": "hashtags",
        "touches_updated_at": True,
        "create_columns": ("name", "category"),
        "update_columns": ("name", "category"),
        "formatter": format_hashtag,
    },
    "cities": {
        "table": "cities",
        "touches_updated_at": True,
        "create_columns": ("name", "state_code", "country_code", "has_boroughs"),
        "update_columns": ("name", "state_code", "country_code", "has_boroughs"),
        "formatter": format_city,
    },
    "neighborhoods": {
        "table": "neighborhoods",
        "touches_updated_at": True,
        "create_columns": ("name", "city_id", "borough", "zipcode_ranges"),
        "update_columns": ("name", "city_id", "borough", "zipcode_ranges"),
        "formatter": format_neighborhood,
        "scope_column": "city_id",
        "display_refs": {"city_id": "cities"},
    },
    "restaurant_chains": {
        "table": "restaurant_chains",
        "touches_updated_at": True,
        "create_columns": ("name", "website", "description"),
        "update_columns": ("name", "website", "description"),
        "formatter": format_chain,
    },
    "submissions": {
        "table": "submissions",
        "create_columns": (
            "user_id", "type", "name", "location", "city", "neighborhood",
            "restaurant_id", "restaurant_name", "tags", "place_id", "status",
        ),
        "update_columns": (
            "name", "location", "city", "neighborhood", "restaurant_id",
            "restaurant_name", "dish_id", "tags", "place_id", "status",
            "rejection_reason", "reviewed_by", "reviewed_at",
        ),
        "formatter": format_submission,
        "analysis_filter": "status IN ('pending', 'needs_review')",
        "display_refs": {"restaurant_id": "restaurants"},
        "status_column": "status",
    },
}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ResourceRegistry:
    """Immutable name → ResourceSchema mapping plus the rules it was built from."""

    def __init__(self, schemas: Mapping[str, ResourceSchema], rules: AdminRules) -> None:
        self._schemas = MappingProxyType(dict(schemas))
        self.rules = rules

    def lookup(self, resource_type: Any) -> ResourceSchema:
        key = resource_type.strip().lower() if isinstance(resource_type, str) else None
        schema = self._schemas.get(key) if key else None
        if schema is None:
            raise UnsupportedResourceType(str(resource_type))
        return schema

    def resource_types(self) -> tuple[str, ...]:
        return tuple(self._schemas)

    def match_settings(self, resource_type: str) -> MatchSettings:
        return self.rules.match_settings(self.lookup(resource_type).name)

    def __contains__(self, resource_type: object) -> bool:
        return isinstance(resource_type, str) and resource_type.strip().lower() in self._schemas


def build_registry(rules: AdminRules) -> ResourceRegistry:
    """Build the registry, attaching cleanup rules from the rule file.

    Raises:
        RuleSetValidationError: if a cleanup rule names an unknown resource
            type or a field that is not an updatable column.
    """
    unknown = set(rules.cleanup) - set(_RESOURCE_DEFINITIONS)
    if unknown:
        raise RuleSetValidationError(f"Cleanup rules for unknown resource types: {sorted(unknown)}")
    unknown = set(rules.matching_overrides) - set(_RESOURCE_DEFINITIONS)
    if unknown:
        raise RuleSetValidationError(f"Matching overrides for unknown resource types: {sorted(unknown)}")

    schemas: dict[str, ResourceSchema] = {}
    for name, definition in _RESOURCE_DEFINITIONS.items():
        field_rules = rules.cleanup.get(name, {})
        bad_fields = set(field_rules) - set(definition["update_columns"])
        if bad_fields:
            raise RuleSetValidationError(
                f"Cleanup rules for {name} name non-updatable fields: {sorted(bad_fields)}"
            )
        schemas[name] = ResourceSchema(
            name=name,
            table=definition["table"],
            create_columns=tuple(definition["create_columns"]),
            update_columns=tuple(definition["update_columns"]),
            formatter=definition["formatter"],
            analysis_filter=definition.get("analysis_filter"),
            field_rules=MappingProxyType(dict(field_rules)),
            match_column=definition.get("match_column", "name"),
            scope_column=definition.get("scope_column"),
            display_refs=MappingProxyType(dict(definition.get("display_refs", {}))),
            hidden_columns=tuple(definition.get("hidden_columns", ())),
            status_column=definition.get("status_column"),
            touches_updated_at=definition.get("touches_updated_at", False),
        )
    return ResourceRegistry(schemas, rules)


@lru_cache(maxsize=None)
def default_registry(rule_file: Path | None = None) -> ResourceRegistry:
    """Return the process-wide registry built from the given (or default) rule file."""
    return build_registry(load_admin_rules(rule_file))


def lookup(resource_type: Any) -> ResourceSchema:
    """Return the schema for resource_type from the default registry."""
    return default_registry().lookup(resource_type)


def resource_types() -> tuple[str, ...]:
    return default_registry().resource_types()
