"""Helpers for pulling structured payloads out of model responses."""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Dict, Iterable, List, Optional

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json(text: str) -> Optional[Any]:
    """Return the JSON value embedded in ``text`` or ``None``.

    A fenced ```json block wins; otherwise the whole text is tried, then the
    span from the first ``{`` to the last ``}``.
    """
    if not text:
        return None

    candidates: List[str] = [m.strip() for m in _FENCED_JSON.findall(text)]
    stripped = text.strip()
    candidates.append(stripped)
    start, end = stripped.find("{"), stripped.rfind("}")
    if 0 <= start < end:
        candidates.append(stripped[start : end + 1])

    for candidate in candidates:
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    return None


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    value = extract_json(text)
    return value if isinstance(value, dict) else None


def missing_keys(data: Dict[str, Any], keys: Iterable[str]) -> List[str]:
    return [key for key in keys if key not in data]


def has_value(data: Any, path: str) -> bool:
    """True when the dotted ``path`` resolves to a non-empty value."""
    current = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return False
        current = current[part]
    if current is None:
        return False
    if isinstance(current, str) and not current.strip():
        return False
    return True


def format_hash(target_format: str) -> str:
    """Short stable fingerprint of a workflow's target format."""
    return hashlib.sha256(target_format.encode("utf-8")).hexdigest()[:16]


def collect_text(value: Any) -> str:
    """Concatenate every string found in a nested JSON value."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return " ".join(collect_text(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return " ".join(collect_text(v) for v in value)
    if value is None:
        return ""
    return str(value)
