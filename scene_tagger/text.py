"""String normalisation helpers shared by the resolver, prompts and parser."""

import json
import re
from typing import Any

_TAG_SPLIT = re.compile(r"[,.;\n]+")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(value: Any) -> str | None:
    """Return the trimmed string, or None for non-strings and blank strings."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def stringify_prompt(value: Any) -> str:
    """Best-effort conversion of any value to prompt text. Never raises.

    None → ""; strings pass through; bools render as JSON literals; numbers
    render in decimal (integral floats without ".0"); everything else is
    JSON-serialised, or "" when that fails.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    # int → str is digit-limited and json.dumps recurses per nesting level
    try:
        if isinstance(value, int):
            return str(value)
        if isinstance(value, float):
            return str(int(value)) if value.is_integer() else str(value)
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError, OverflowError, RecursionError):
        return ""


def format_tag_list(*parts: Any) -> str:
    """Collapse arbitrary text into a canonical lowercase comma-separated tag list.

    "Hello, World." + "foo;bar\\nbaz" → "hello, world, foo, bar, baz"

    Applying it to its own output returns the same string.
    """
    cleaned = [stringify_prompt(part).replace("\r", "") for part in parts]
    combined = ", ".join(part for part in cleaned if part.strip())
    tags: list[str] = []
    for segment in _TAG_SPLIT.split(combined):
        tag = _WHITESPACE.sub(" ", segment.strip()).lower()
        if tag:
            tags.append(tag)
    return ", ".join(tags)
