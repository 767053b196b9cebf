"""Public-record formatters, one per resource type.

A formatter turns a raw database row (dict) into the record returned to
callers: typed ids and numbers, ISO timestamps, trimmed strings, arrays
defaulted to []. Formatters are pure and never used while persisting.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable

Formatter = Callable[[dict[str, Any]], "dict[str, Any] | None"]


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------

def _int(value: Any, default: int | None = None) -> int | None:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s if s else None


def _bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() not in ("false", "0", "")
    return bool(value)


def _iso(value: Any) -> str | None:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return _str(value)


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [v for v in value if isinstance(v, str) and v]


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------

def format_restaurant(row: dict[str, Any]) -> dict[str, Any] | None:
    if not row or row.get("id") is None:
        return None
    return {
        "id": _int(row["id"]),
        "name": _str(row.get("name")) or "Unnamed Restaurant",
        "city_id": _int(row.get("city_id")),
        "city_name": _str(row.get("city_name")),
        "neighborhood_id": _int(row.get("neighborhood_id")),
        "neighborhood_name": _str(row.get("neighborhood_name")),
        "chain_id": _int(row.get("chain_id")),
        "address": _str(row.get("address")),
        "zip_code": _str(row.get("zip_code")),
        "phone": _str(row.get("phone")),
        "website": _str(row.get("website")),
        "google_place_id": _str(row.get("google_place_id")),
        "latitude": _float(row.get("latitude")),
        "longitude": _float(row.get("longitude")),
        "adds": _int(row.get("adds"), 0),
        "tags": _str_list(row.get("tags")),
        "created_at": _iso(row.get("created_at")),
        "updated_at": _iso(row.get("updated_at")),
    }


def format_dish(row: dict[str, Any]) -> dict[str, Any] | None:
    if not row or row.get("id") is None:
        return None
    return {
        "id": _int(row["id"]),
        "name": _str(row.get("name")) or "Unnamed Dish",
        "restaurant_id": _int(row.get("restaurant_id")),
        "restaurant_name": _str(row.get("restaurant_name")),
        "description": _str(row.get("description")),
        "price": _float(row.get("price")),
        "adds": _int(row.get("adds"), 0),
        "tags": _str_list(row.get("tags")),
        "created_at": _iso(row.get("created_at")),
        "updated_at": _iso(row.get("updated_at")),
    }


def format_list(row: dict[str, Any]) -> dict[str, Any] | None:
    if not row or row.get("id") is None:
        return None
    return {
        "id": _int(row["id"]),
        "name": _str(row.get("name")) or "Unnamed List",
        "description": _str(row.get("description")),
        "list_type": _str(row.get("list_type")) or "mixed",
        "is_public": _bool(row.get("is_public"), True),
        "city_name": _str(row.get("city_name")),
        "tags": _str_list(row.get("tags")),
        "user_id": _int(row.get("user_id")),
        "creator_handle": _str(row.get("creator_handle")),
        "saved_count": _int(row.get("saved_count"), 0),
        "created_at": _iso(row.get("created_at")),
        "updated_at": _iso(row.get("updated_at")),
    }


def format_user(row: dict[str, Any]) -> dict[str, Any] | None:
    """Public user record; credentials are never exposed."""
    if not row or row.get("id") is None:
        return None
    return {
        "id": _int(row["id"]),
        "username": _str(row.get("username")),
        "email": _str(row.get("email")),
        "account_type": _str(row.get("account_type")) or "user",
        "created_at": _iso(row.get("created_at")),
    }


def format_city(row: dict[str, Any]) -> dict[str, Any] | None:
    if not row or row.get("id") is None:
        return None
    return {
        "id": _int(row["id"]),
        "name": _str(row.get("name")),
        "state_code": _str(row.get("state_code")),
        "country_code": _str(row.get("country_code")),
        "has_boroughs": _bool(row.get("has_boroughs")),
    }


def format_neighborhood(row: dict[str, Any]) -> dict[str, Any] | None:
    if not row or row.get("id") is None:
        return None
    return {
        "id": _int(row["id"]),
        "name": _str(row.get("name")),
        "city_id": _int(row.get("city_id")),
        "city_name": _str(row.get("city_name")),
        "borough": _str(row.get("borough")),
        "zipcode_ranges": _str_list(row.get("zipcode_ranges")),
    }


def format_hashtag(row: dict[str, Any]) -> dict[str, Any] | None:
    if not row or row.get("id") is None:
        return None
    return {
        "id": _int(row["id"]),
        "name": _str(row.get("name")),
        "category": _str(row.get("category")),
    }


def format_chain(row: dict[str, Any]) -> dict[str, Any] | None:
    if not row or row.get("id") is None:
        return None
    return {
        "id": _int(row["id"]),
        "name": _str(row.get("name")),
        "website": _str(row.get("website")),
        "description": _str(row.get("description")),
    }


def format_submission(row: dict[str, Any]) -> dict[str, Any] | None:
    if not row or row.get("id") is None:
        return None
    return {
        "id": _int(row["id"]),
        "user_id": _int(row.get("user_id")),
        "type": _str(row.get("type")),
        "name": _str(row.get("name")),
        "location": _str(row.get("location")),
        "city": _str(row.get("city")),
        "neighborhood": _str(row.get("neighborhood")),
        "restaurant_id": _int(row.get("restaurant_id")),
        "restaurant_name": _str(row.get("restaurant_name")),
        "dish_id": _int(row.get("dish_id")),
        "tags": _str_list(row.get("tags")),
        "place_id": _str(row.get("place_id")),
        "status": _str(row.get("status")) or "pending",
        "rejection_reason": _str(row.get("rejection_reason")),
        "created_at": _iso(row.get("created_at")),
        "reviewed_at": _iso(row.get("reviewed_at")),
        "reviewed_by": _int(row.get("reviewed_by")),
    }
