"""
Canonical serialization + content fingerprint for versionable node fields.

The rendered text is key-sorted at every level and type-distinguishing
(`1`, `"1"` and `true` never collide). Pin lists are sorted by child id before
rendering, so the hash does not depend on the order siblings were read in.
"""
from __future__ import annotations

import enum
import hashlib
import json
from collections.abc import Mapping
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

PIN_KEY = "child_id"


def is_pin_list(value: Any) -> bool:
    return (
        isinstance(value, (list, tuple))
        and len(value) > 0
        and all(isinstance(item, Mapping) and PIN_KEY in item for item in value)
    )


def sorted_pins(pins: list[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    return sorted(pins, key=lambda p: (str(p.get(PIN_KEY)), stable_stringify(p.get("version_number"))))


def stable_stringify(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, enum.Enum):
        return stable_stringify(value.value)
    if isinstance(value, (bool, int, str)):
        return json.dumps(value)
    if isinstance(value, float):
        # NaN/inf are not valid JSON; keep them deterministic anyway.
        if value != value or value in (float("inf"), float("-inf")):
            return json.dumps(repr(value))
        return json.dumps(value)
    if isinstance(value, Decimal):
        return json.dumps(str(value))
    if isinstance(value, (datetime, date, time)):
        return json.dumps(value.isoformat())
    if isinstance(value, (bytes, bytearray)):
        return json.dumps(bytes(value).hex())
    if isinstance(value, Mapping):
        parts = []
        for k in sorted(value.keys(), key=str):
            parts.append(f"{json.dumps(str(k))}:{stable_stringify(value[k])}")
        return "{" + ",".join(parts) + "}"
    if isinstance(value, (set, frozenset)):
        rendered = sorted(stable_stringify(v) for v in value)
        return "[" + ",".join(rendered) + "]"
    if isinstance(value, (list, tuple)):
        items = sorted_pins(list(value)) if is_pin_list(value) else value
        return "[" + ",".join(stable_stringify(v) for v in items) + "]"
    return json.dumps(str(value))


def content_hash(payload: Mapping[str, Any]) -> str:
    """SHA-256 (lowercase hex) of the canonical rendering of `payload`."""
    return hashlib.sha256(stable_stringify(payload).encode("utf-8")).hexdigest()
