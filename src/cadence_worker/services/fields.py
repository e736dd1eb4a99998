"""Locating and rewriting ``key: value`` field lines in rendered prompts.

Both dialects are handled: the Max form quotes its values
(``genre: "jazz, soul"``) and the standard form does not
(``Genre: jazz, soul``). Keys match case-insensitively and a rewrite keeps the
original key spelling and quoting.
"""

from __future__ import annotations

import re
from typing import Dict, List, Optional

MIN_GENRE_COUNT = 1
MAX_GENRE_COUNT = 4

_FIELD_KEYS: Dict[str, str] = {
    "genre": r"genre",
    "bpm": r"bpm",
    "mood": r"mood",
    "instruments": r"instruments",
    "style_tags": r"style[^\S\n]+tags?",
    "recording": r"recording",
}

_FIELD_PATTERNS: Dict[str, re.Pattern[str]] = {
    name: re.compile(
        rf'^(?P<key>{key})[^\S\n]*:[^\S\n]*(?P<quote>"?)(?P<value>[^"\n]*)"?[^\S\n]*$',
        re.IGNORECASE | re.MULTILINE,
    )
    for name, key in _FIELD_KEYS.items()
}


def clamp_genre_count(target_count: int) -> int:
    return max(MIN_GENRE_COUNT, min(MAX_GENRE_COUNT, int(target_count)))


def find_field(text: str, field: str) -> Optional[re.Match[str]]:
    """First line of ``text`` carrying ``field``, or ``None``."""
    try:
        pattern = _FIELD_PATTERNS[field]
    except KeyError:
        raise ValueError(f"unknown prompt field '{field}'") from None
    return pattern.search(text)


def rewrite_field(text: str, match: re.Match[str], value: str) -> str:
    quote = match.group("quote")
    line = f"{match.group('key')}: {quote}{value}{quote}"
    return text[: match.start()] + line + text[match.end() :]


def split_list(value: str) -> List[str]:
    """Comma-separated entries, trimmed, case-insensitively deduplicated."""
    items: List[str] = []
    seen: set[str] = set()
    for part in value.split(","):
        item = part.strip()
        if item and item.casefold() not in seen:
            seen.add(item.casefold())
            items.append(item)
    return items
