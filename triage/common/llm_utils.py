"""Helpers for reading structured data out of completion responses."""

from __future__ import annotations

import json
from typing import Any, Optional


def _strip_fences(text: str) -> str:
    if not text.lstrip().startswith("```"):
        return text
    lines = [l for l in text.split("\n") if not l.strip().startswith("```")]
    return "\n".join(lines)


def parse_llm_json(raw: str) -> dict:
    """Parse a JSON object from a completion response.

    Tries in order:
    1. Strip markdown code fences, then json.loads
    2. Extract substring between first '{' and last '}', then json.loads
    3. Return empty dict

    A top-level JSON value that is not an object also yields an empty dict.
    """
    if not raw:
        return {}

    try:
        data = json.loads(_strip_fences(raw))
    except json.JSONDecodeError:
        data = None
        start = raw.find("{")
        end = raw.rfind("}") + 1
        if start >= 0 and end > start:
            try:
                data = json.loads(raw[start:end])
            except json.JSONDecodeError:
                pass

    return data if isinstance(data, dict) else {}


def coerce_str(value: Any) -> Optional[str]:
    """Normalize an optional scalar field: blank strings and "null" become None."""
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in ("null", "none", "n/a"):
        return None
    return text


def coerce_str_list(value: Any) -> Optional[list]:
    """Normalize an optional list field; a bare string becomes a one-item list."""
    if value is None:
        return None
    if isinstance(value, str):
        item = coerce_str(value)
        return [item] if item else None
    if isinstance(value, (list, tuple)):
        items = [s for s in (coerce_str(v) for v in value) if s]
        return items or None
    return None
