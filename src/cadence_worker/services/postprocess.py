"""Length and genre-count enforcement plus structured response parsing."""

from __future__ import annotations

import asyncio
import json
import re
from typing import Awaitable, Callable, List, Optional, Tuple

from loguru import logger

from .blender import GenreBlender
from .exceptions import ParseError
from .fields import clamp_genre_count, find_field, rewrite_field, split_list
from .formatter import is_header_line
from .redaction import preview
from .rng import RngStream

CondenseFn = Callable[[str], Awaitable[str]]

DEFAULT_TITLE = "Untitled"

_CODE_FENCE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_TITLE_QUOTES = "\"'`“”‘’"


async def enforce_length(
    text: str, max_chars: int, condense: CondenseFn, *, min_chars: int = 1
) -> str:
    """Condense ``text`` once when it exceeds ``max_chars``.

    The condensed output is returned even when it is still too long; the
    budget is best-effort. A failed condense, or one that leaves fewer than
    ``min_chars`` characters, keeps the input.
    """
    if len(text) <= max_chars:
        return text
    try:
        condensed = (await condense(text)).strip()
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # noqa: BLE001 - condensing is optional polish
        logger.warning("condense failed, keeping {} chars: {}", len(text), exc)
        return text
    if not condensed or len(condensed) < min_chars:
        logger.warning(
            "condense returned {} chars (minimum {}), keeping {} chars",
            len(condensed),
            min_chars,
            len(text),
        )
        return text
    if len(condensed) > max_chars:
        logger.info("condensed prompt still {} chars (budget {})", len(condensed), max_chars)
    return condensed


def extract_genres(text: str) -> Optional[List[str]]:
    """Genres listed in the first ``genre:`` field, or ``None`` when absent."""
    match = find_field(text, "genre")
    if match is None:
        return None
    return split_list(match.group("value"))


def enforce_genre_count(
    text: str,
    target_count: int,
    rng: RngStream,
    *,
    blender: Optional[GenreBlender] = None,
) -> str:
    target = clamp_genre_count(target_count)
    match = find_field(text, "genre")
    current = split_list(match.group("value")) if match else []

    if len(current) > target:
        genres = current[:target]
    elif len(current) < target:
        supplier = blender or GenreBlender()
        genres = current + supplier.random_genres(rng, target - len(current), exclude=current)
    else:
        genres = current

    joined = ", ".join(genres)
    if match is not None:
        return rewrite_field(text, match, joined)

    lines = text.splitlines()
    insert_at = 0
    while insert_at < len(lines) and is_header_line(lines[insert_at]):
        insert_at += 1
    lines.insert(insert_at, f'genre: "{joined}"')
    return "\n".join(lines)


def clean_title(value: Optional[str], fallback: str = DEFAULT_TITLE) -> str:
    if not value:
        return fallback
    title = " ".join(value.split()).strip(_TITLE_QUOTES).strip()
    if title.lower().startswith("title:"):
        title = title[len("title:") :].strip().strip(_TITLE_QUOTES).strip()
    return title or fallback


def parse_style_title(raw: str, *, stage: str) -> Tuple[str, str]:
    """Extract ``(style, title)`` from a JSON reply, tolerating code fences and chatter."""
    cleaned = _CODE_FENCE.sub("", raw.strip())
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        raise ParseError(stage, "response contains no JSON object", raw_preview=preview(raw, 200))
    try:
        data = json.loads(cleaned[start : end + 1])
    except json.JSONDecodeError as exc:
        raise ParseError(
            stage, f"response JSON is malformed ({exc.msg})", raw_preview=preview(raw, 200)
        ) from exc
    if not isinstance(data, dict):
        raise ParseError(stage, "response JSON is not an object", raw_preview=preview(raw, 200))

    style = data.get("style")
    title = data.get("title")
    if not isinstance(style, str) or not style.strip():
        raise ParseError(stage, "response lacks a non-empty 'style'", raw_preview=preview(raw, 200))
    if not isinstance(title, str) or not clean_title(title, fallback=""):
        raise ParseError(stage, "response lacks a non-empty 'title'", raw_preview=preview(raw, 200))
    return style.strip(), clean_title(title)
