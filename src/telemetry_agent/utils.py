"""
Utility functions for the telemetry agent.

Includes id/time helpers, canonical payload serialization, content hashing
and payload sanitization.
"""

import hashlib
import json
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

MAX_STRING_LENGTH = 1000
MAX_DEPTH = 5

_SENSITIVE_KEYS = re.compile(
    r"pass|pwd|token|secret|auth|bearer|session|cookie|signature|"
    r"api[-_]?key|private[-_]?key|access[-_]?token|refresh[-_]?token",
    re.IGNORECASE,
)
_JWT = re.compile(r"^[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}$")
_HEX_TOKEN = re.compile(r"^[a-f0-9]{32,}$", re.IGNORECASE)


def generate_id() -> str:
    """Generate a UUID string for record identification."""
    return str(uuid.uuid4())


def iso_timestamp(epoch_seconds: float) -> str:
    """Format epoch seconds as an ISO-8601 UTC string with millisecond precision."""
    dt = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[float]:
    """Parse an ISO string, datetime or epoch number into epoch seconds."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, str):
        return parse_timestamp(datetime.fromisoformat(value.replace("Z", "+00:00")))
    raise ValueError(f"Unsupported timestamp: {value!r}")


def canonical_json(data: Any) -> str:
    """Deterministic JSON: sorted keys, compact separators."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def content_hash(name: str, timestamp_ms: Optional[int], payload: Dict[str, Any]) -> str:
    """
    Deterministic digest over (name, timestamp, serialized payload).

    Used as the event's identity for duplicate suppression; it is not random.
    Without a timestamp the digest covers name and payload only.
    """
    h = hashlib.sha256()
    h.update(name.encode("utf-8"))
    h.update(b"\x00")
    h.update(b"" if timestamp_ms is None else str(timestamp_ms).encode("ascii"))
    h.update(b"\x00")
    h.update(canonical_json(payload).encode("utf-8"))
    return h.hexdigest()


def sanitize_event_data(data: Any, max_depth: int = MAX_DEPTH, _depth: int = 0) -> Any:
    """
    Strip credential-looking keys and values, truncate long strings.

    Args:
        data: Arbitrary JSON-like value
        max_depth: Nesting level at which values are replaced by a marker

    Returns:
        A sanitized copy; the input is not modified
    """
    if _depth >= max_depth:
        return "[Max depth reached]"
    if data is None:
        return None
    if callable(data):
        return "[Removed]"

    if isinstance(data, (list, tuple)):
        return [sanitize_event_data(item, max_depth, _depth + 1) for item in data]

    if isinstance(data, dict):
        return {
            key: sanitize_event_data(value, max_depth, _depth + 1)
            for key, value in data.items()
            if not _SENSITIVE_KEYS.search(str(key))
        }

    if isinstance(data, str):
        if len(data) > MAX_STRING_LENGTH:
            return data[:MAX_STRING_LENGTH] + "...[truncated]"
        if _JWT.match(data) or _HEX_TOKEN.match(data):
            return "[Redacted]"
        return data

    return data
