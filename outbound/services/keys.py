"""
Cache key helpers.

Keys are ``namespace:identifier[:params]``. Short parameter sets stay
readable; long ones collapse into a SHA-256 prefix.
"""

import hashlib
import json
import re
from datetime import datetime, timezone
from typing import Any, Literal

MAX_READABLE_LENGTH = 200
HASH_LENGTH = 16

_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")


def _sort(value: Any) -> Any:
    """Recursively sort mappings and sequences so equal inputs serialize equally."""
    if isinstance(value, dict):
        return {k: _sort(value[k]) for k in sorted(value)}
    if isinstance(value, (list, tuple, set)):
        items = [_sort(v) for v in value]
        return sorted(items, key=lambda v: json.dumps(v, sort_keys=True, default=str))
    return value


def _sanitize_value(value: Any) -> str:
    if isinstance(value, str):
        return _UNSAFE.sub("_", value)[:50]
    if isinstance(value, (list, tuple, set)):
        return ",".join(_sanitize_value(v) for v in value)[:50]
    if isinstance(value, dict):
        encoded = json.dumps(_sort(value), default=str)
        return hashlib.md5(encoded.encode()).hexdigest()[:8]
    return str(value)[:50]


def _sanitize_part(part: str) -> str:
    return _UNSAFE.sub("_", part)[:100]


def generate_key(
    namespace: str, identifier: str, params: dict[str, Any] | None = None
) -> str:
    """Build a deterministic key from a namespace, an identifier and parameters."""
    cleaned = {k: v for k, v in (params or {}).items() if v is not None}
    ordered = _sort(cleaned)
    encoded = json.dumps(ordered, default=str)

    if len(encoded) > MAX_READABLE_LENGTH:
        digest = hashlib.sha256(encoded.encode()).hexdigest()[:HASH_LENGTH]
        return f"{namespace}:{identifier}:{digest}"

    pairs = ":".join(f"{k}={_sanitize_value(v)}" for k, v in ordered.items())
    return f"{namespace}:{identifier}" + (f":{pairs}" if pairs else "")


def generate_search_key(resource: str, query: str, **options: Any) -> str:
    """Key for a search call; the query is case- and whitespace-insensitive."""
    return generate_key(resource, "search", {"q": query.strip().lower(), **options})


def generate_composite_key(parts: list[str]) -> str:
    valid = [p for p in parts if p and p.strip()]
    if not valid:
        raise ValueError("At least one valid key part is required")
    return ":".join(_sanitize_part(p) for p in valid)


def generate_time_based_key(
    namespace: str,
    identifier: str,
    granularity: Literal["minute", "hour", "day"] = "hour",
    at: datetime | None = None,
) -> str:
    """Key bucketed by UTC minute, hour or day."""
    at = (at or datetime.now(timezone.utc)).astimezone(timezone.utc)
    formats = {"minute": "%Y%m%d_%H%M", "hour": "%Y%m%d_%H", "day": "%Y%m%d"}
    if granularity not in formats:
        raise ValueError(f"Unknown granularity: {granularity}")
    return f"{namespace}:{identifier}:{at.strftime(formats[granularity])}"


def parse_key(key: str) -> dict[str, str | None]:
    """Split a key into namespace, identifier and the remaining params."""
    parts = key.split(":")
    if len(parts) < 2:
        return {"namespace": None, "identifier": None, "params": key}
    return {
        "namespace": parts[0],
        "identifier": parts[1],
        "params": ":".join(parts[2:]),
    }
