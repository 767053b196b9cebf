"""Normalization functions for admin payloads and data-cleanup rules.

All functions accept str | None and return the appropriate type or None,
unless documented otherwise.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Any

_TITLE_BOUNDARY = re.compile(r"(^|[\s\-])([a-z])")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: title_case
# ---------------------------------------------------------------------------

def title_case(value: str | None) -> str | None:
    """Capitalize each word of a display name.

    Lowercases first, then uppercases letters at the start of the string or
    after whitespace / a hyphen. Apostrophes are not word boundaries, so
    "joe's pizza" becomes "Joe's Pizza". Values containing '@' are returned
    unchanged (emails, handles).
    """
    if value is None:
        return None
    if "@" in value:
        return value
    return _TITLE_BOUNDARY.sub(
        lambda m: m.group(1) + m.group(2).upper(), value.lower()
    )


# ---------------------------------------------------------------------------
# Rule 4: truncate_text
# ---------------------------------------------------------------------------

def truncate_text(value: str | None, max_length: int) -> str | None:
    """Shorten to max_length characters, ending with '...' when cut."""
    if value is None or len(value) <= max_length:
        return value
    if max_length <= 3:
        return value[:max_length]
    return value[: max_length - 3] + "..."


# ---------------------------------------------------------------------------
# Rule 5: format_us_phone
# ---------------------------------------------------------------------------

def format_us_phone(value: str | None) -> str | None:
    """Return '(XXX) XXX-XXXX' for US numbers, else the input unchanged.

    Keeps digits only. 10 digits, or 11 digits starting with 1, are formatted.
    Anything else is left alone; a cleanup rule never destroys data.
    """
    if value is None:
        return None
    digits = re.sub(r"\D", "", value)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        return value
    return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"


# ---------------------------------------------------------------------------
# Rule 6: format_website
# ---------------------------------------------------------------------------

def format_website(value: str | None) -> str | None:
    """Prefix 'https://' unless the URL already carries an http(s) scheme."""
    v = trim(value)
    if v is None:
        return value
    if v.lower().startswith(("http://", "https://")):
        return v
    return f"https://{v}"


# ---------------------------------------------------------------------------
# Rule 7: normalize_name  (for duplicate keys and existence checks)
# ---------------------------------------------------------------------------

def normalize_name(value: str | None) -> str | None:
    """Lowercase, remove punctuation except spaces, collapse spaces.

    Used for duplicate-detection keys, never stored.
    """
    v = trim(value)
    if v is None:
        return None
    # Decompose unicode (e.g. accented chars) then drop combining marks
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.lower()
    v = re.sub(r"[^\w\s]", "", v)
    v = re.sub(r"\s+", " ", v).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------

def parse_positive_int(value: Any) -> int | None:
    """Return value as a positive int, or None when absent.

    Raises ValueError for values that are present but not a positive integer.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"{value!r} is not a positive integer")
    if isinstance(value, str):
        value = trim(value)
        if value is None:
            return None
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{value!r} is not a positive integer")
    if isinstance(value, float) and value != n:
        raise ValueError(f"{value!r} is not a positive integer")
    if n <= 0:
        raise ValueError(f"{value!r} is not a positive integer")
    return n


def split_tags(value: Any) -> list[str]:
    """Return a de-duplicated list of lowercase tag names.

    Accepts a list of strings or a single comma-separated string (CSV input).
    A leading '#' is dropped.
    """
    if value is None:
        return []
    if isinstance(value, str):
        raw = value.split(",")
    else:
        raw = [str(v) for v in value]
    tags: list[str] = []
    for token in raw:
        t = trim(token)
        if t is None:
            continue
        t = t.lstrip("#").lower()
        if t and t not in tags:
            tags.append(t)
    return tags
