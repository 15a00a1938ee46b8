"""
Container ID Normalization Utilities

The Portainer Docker proxy accepts either the 64-char full ID or the
12-char short ID, but some code paths (and some Docker engines behind
agents) only resolve one of them. Callers try the ID they were given
first and fall back to the normalized short form on a 404.
"""

import re

FULL_ID_LENGTH = 64
SHORT_ID_LENGTH = 12

_FULL_ID_RE = re.compile(r'^[0-9a-f]{64}$', re.IGNORECASE)


def normalize_container_id(container_id: str) -> str:
    """
    Normalize container ID to 12-char short format.

    Only a 64-char full ID is shortened. Anything else (a short ID, a
    container name) passes through unchanged.

    Args:
        container_id: Container ID (12 or 64 chars) or name

    Returns:
        12-char short container ID, or the input unchanged

    Examples:
        >>> normalize_container_id("abc123def456")
        "abc123def456"
        >>> normalize_container_id("abc123def456789...full64chars")
        "abc123def456"
    """
    if container_id and len(container_id) == FULL_ID_LENGTH:
        return container_id[:SHORT_ID_LENGTH]
    return container_id


def is_full_container_id(value: str) -> bool:
    """Return True if value is a 64-char hexadecimal container ID."""
    return bool(value) and bool(_FULL_ID_RE.match(value))


def clean_container_name(name: str) -> str:
    """Strip the leading slash Docker puts on container names."""
    if not name:
        return ''
    return name[1:] if name.startswith('/') else name
