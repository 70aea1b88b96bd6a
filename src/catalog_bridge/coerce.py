"""
Loose value coercion for catalog service JSON.

The service (and operator templates) hand back ids as ints, floats or strings
depending on version and serializer, so every consumer goes through here.
"""

from typing import Any


def as_int(value: Any) -> int:
    """Best-effort integer conversion; 0 when the value is unusable."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return 0
    return 0


def is_blank(value: Any) -> bool:
    """True for None, empty strings, zero ids and anything that is not an id."""
    if isinstance(value, str):
        return value.strip() in ("", "0")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return True
    return int(value) == 0


def as_str(value: Any) -> str:
    """Stringify a JSON scalar, treating None as empty."""
    if value is None:
        return ""
    return str(value).strip()


def first_non_empty(*values: str | None) -> str:
    for value in values:
        if value and value.strip():
            return value.strip()
    return ""


def tags_to_ints(value: Any) -> list[int] | None:
    """
    Normalize a tag value into a list of integer tag ids.

    Accepts an int list, a mixed list, a string list or a single numeric
    string. Returns None when nothing usable remains.
    """
    if value is None:
        return None

    items = value if isinstance(value, (list, tuple)) else [value]
    out: list[int] = []
    for item in items:
        if isinstance(item, bool):
            continue
        if isinstance(item, int):
            out.append(item)
        elif isinstance(item, float):
            out.append(int(item))
        elif isinstance(item, str):
            try:
                out.append(int(item.strip()))
            except ValueError:
                continue

    return out or None
