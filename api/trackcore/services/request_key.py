"""Canonicalization of client-supplied request identifiers."""

import re

# 8-4-4-4-12 hex, version 1-5, RFC 4122 variant
UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_uuid(value: str) -> bool:
    """Check whether a trimmed value is a well-formed UUID string."""
    return UUID_PATTERN.match(value) is not None


def normalize(raw: str | None, allow_empty: bool = False) -> str | None:
    """
    Normalize a request id so retries compare equal.

    Whitespace is trimmed and UUIDs are lower-cased. Any other identifier
    keeps its case. Blank input becomes None, or "" when allow_empty is set.
    """
    if raw is None:
        return None

    trimmed = str(raw).strip()
    if not trimmed:
        return "" if allow_empty else None

    if is_uuid(trimmed):
        return trimmed.lower()
    return trimmed
