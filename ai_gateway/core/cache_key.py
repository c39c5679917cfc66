"""
Content-addressed cache keys.

Normalizes request inputs into a canonical form and hashes them so that
logically identical requests share one cache entry.

Key format: ai:{version}:{prefix}:{sha256 hex}
"""

import hashlib
import json
from typing import Any

CACHE_DOMAIN = "ai"

# Bump when normalization or serialization changes; old keys are then
# never read again and simply expire.
CACHE_VERSION = "v1"


def normalize_value(value: Any) -> Any:
    """Return the canonical form of an input value.

    Strings are stripped and lowercased, numbers and booleans are kept,
    None stays None, sequences and sets are normalized element-wise and
    sorted by their serialization, and mappings are normalized with keys
    sorted. Anything else is stringified.

    Args:
        value: Arbitrary input value

    Returns:
        Normalized value built only from dict, list, str, int, float,
        bool and None
    """
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower()
    if isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [normalize_value(v) for v in value]
        return sorted(items, key=stable_stringify)
    if isinstance(value, dict):
        return {
            str(key): normalize_value(value[key])
            for key in sorted(value, key=str)
        }
    return str(value)


def stable_stringify(value: Any) -> str:
    """Serialize a normalized value deterministically."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str
    )


def derive_cache_key(prefix: str, *parts: Any) -> str:
    """Derive a deterministic cache key from a prefix and input parts.

    Args:
        prefix: Call class, e.g. the usage action name
        *parts: Input values identifying the request

    Returns:
        Cache key in the form ai:v1:{prefix}:{hash}
    """
    normalized = [normalize_value(part) for part in parts]
    payload = stable_stringify(normalized)
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"{CACHE_DOMAIN}:{CACHE_VERSION}:{prefix}:{digest}"
