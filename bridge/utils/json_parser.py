# bridge/utils/json_parser.py
"""
Helpers for the JSON payloads exchanged with devices and the ingestion service.
Device firmware returns JSON for most ISAPI AccessControl endpoints, and events
in the alertStream are JSON parts.
"""

import json
import math
import re
from typing import Optional, Any, Union


def safe_parse_json(raw: Union[bytes, str, None]) -> Optional[Any]:
    """Parse JSON bytes/text safely. Returns None on error."""
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        return None


def get_nested(data: Any, *keys: str, default: Any = None) -> Any:
    """Safely navigate nested dict keys. Returns default if any key is missing."""
    current = data
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


def finite_int(value: Any) -> Optional[int]:
    """Return value as int only when it is already a finite number (bools excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return int(value)


def strip_jsonc(text: str) -> str:
    """
    Remove // and /* */ comments and trailing commas from a JSON document.
    String literals are left untouched, so URLs like http://host survive.
    """
    out = []
    i, n = 0, len(text)
    quote = None
    while i < n:
        ch = text[i]
        nxt = text[i + 1] if i + 1 < n else ""
        if quote:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(nxt)
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
        elif ch in ('"', "'"):
            quote = ch
            out.append(ch)
            i += 1
        elif ch == "/" and nxt == "/":
            end = text.find("\n", i)
            i = n if end == -1 else end
        elif ch == "/" and nxt == "*":
            end = text.find("*/", i + 2)
            i = n if end == -1 else end + 2
        else:
            out.append(ch)
            i += 1
    return re.sub(r",(\s*[}\]])", r"\1", "".join(out))


def parse_jsonc(text: str) -> Any:
    """Parse JSON that may contain comments, a BOM or trailing commas. Raises on invalid input."""
    return json.loads(strip_jsonc(text.lstrip("\ufeff")))
