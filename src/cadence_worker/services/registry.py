"""Read-only genre and category registry loaded from packaged JSON data."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..app.models import VibeCategory

_DATA_DIR = Path(__file__).resolve().parent.parent / "data"
_GENRES_PATH = _DATA_DIR / "genres.json"
_CATEGORIES_PATH = _DATA_DIR / "categories.json"

GENRE_FIELDS = (
    "time_signatures",
    "bpm",
    "instruments",
    "chord_progressions",
    "moods",
    "production",
    "style_tags",
)


@dataclass(frozen=True)
class TempoRange:
    min: int
    max: int

    def __str__(self) -> str:
        return f"between {self.min} and {self.max}"


@dataclass(frozen=True)
class GenreDefinition:
    id: str
    name: str
    aliases: Tuple[str, ...]
    time_signatures: Tuple[str, ...]
    bpm: TempoRange
    instruments: Tuple[str, ...]
    chord_progressions: Tuple[str, ...]
    moods: Tuple[str, ...]
    production: Tuple[str, ...]
    style_tags: Tuple[str, ...]


@dataclass(frozen=True)
class TitleWords:
    adjectives: Tuple[str, ...]
    nouns: Tuple[str, ...]
    contexts: Tuple[str, ...]


@dataclass(frozen=True)
class CategoryTemplate:
    category: VibeCategory
    label: str
    genres: Tuple[str, ...]
    instruments: Tuple[Tuple[str, ...], ...]
    moods: Tuple[str, ...]
    title_words: TitleWords


@dataclass(frozen=True)
class GenreRegistry:
    version: int
    genres: Dict[str, GenreDefinition]
    aliases: Dict[str, str]
    default_time_signatures: Tuple[str, ...]
    default_bpm: TempoRange
    fallback_genre: str
    categories: Dict[VibeCategory, CategoryTemplate]

    def get(self, genre_id: str) -> Optional[GenreDefinition]:
        return self.genres.get(genre_id)

    def resolve(self, token: str) -> Optional[str]:
        """Map a lowercase token or alias onto a genre id."""
        if token in self.genres:
            return token
        return self.aliases.get(token)

    def genre_ids(self) -> List[str]:
        return list(self.genres)

    def display_name(self, genre_id: str) -> str:
        genre = self.genres.get(genre_id)
        return genre.name if genre else genre_id

    def category(self, category: VibeCategory) -> CategoryTemplate:
        return self.categories[category]


def _require_pool(genre_id: str, field: str, values: list) -> Tuple[str, ...]:
    if not values:
        raise RuntimeError(f"genre '{genre_id}' has an empty {field} pool")
    return tuple(str(value) for value in values)


def _build_genre(entry: dict) -> GenreDefinition:
    genre_id = entry["id"]
    bpm = entry["bpm"]
    if int(bpm["min"]) > int(bpm["max"]):
        raise RuntimeError(f"genre '{genre_id}' has an inverted bpm range")
    return GenreDefinition(
        id=genre_id,
        name=entry["name"],
        aliases=tuple(alias.casefold() for alias in entry.get("aliases", [])),
        time_signatures=_require_pool(genre_id, "time_signatures", entry["time_signatures"]),
        bpm=TempoRange(min=int(bpm["min"]), max=int(bpm["max"])),
        instruments=_require_pool(genre_id, "instruments", entry["instruments"]),
        chord_progressions=_require_pool(
            genre_id, "chord_progressions", entry["chord_progressions"]
        ),
        moods=_require_pool(genre_id, "moods", entry["moods"]),
        production=_require_pool(genre_id, "production", entry["production"]),
        style_tags=_require_pool(genre_id, "style_tags", entry["style_tags"]),
    )


def _build_category(key: str, entry: dict) -> CategoryTemplate:
    try:
        category = VibeCategory(key)
    except ValueError as exc:  # pragma: no cover - configuration error
        raise RuntimeError(f"unknown category '{key}' in registry") from exc
    words = entry["title_words"]
    return CategoryTemplate(
        category=category,
        label=entry["label"],
        genres=_require_pool(key, "genres", entry["genres"]),
        instruments=tuple(tuple(group) for group in entry["instruments"]),
        moods=_require_pool(key, "moods", entry["moods"]),
        title_words=TitleWords(
            adjectives=_require_pool(key, "adjectives", words["adjectives"]),
            nouns=_require_pool(key, "nouns", words["nouns"]),
            contexts=_require_pool(key, "contexts", words["contexts"]),
        ),
    )


def _load_registry() -> GenreRegistry:
    try:
        genres_raw = json.loads(_GENRES_PATH.read_text(encoding="utf-8"))
        categories_raw = json.loads(_CATEGORIES_PATH.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:  # pragma: no cover - packaging error
        raise RuntimeError(f"registry data missing under {_DATA_DIR}") from exc

    genres: Dict[str, GenreDefinition] = {}
    aliases: Dict[str, str] = {}
    for entry in genres_raw["genres"]:
        genre = _build_genre(entry)
        genres[genre.id] = genre
        for alias in genre.aliases:
            aliases.setdefault(alias, genre.id)
        aliases.setdefault(genre.name.casefold(), genre.id)

    categories = {
        template.category: template
        for template in (
            _build_category(key, entry)
            for key, entry in categories_raw["categories"].items()
        )
    }
    missing = [category.value for category in VibeCategory if category not in categories]
    if missing:
        raise RuntimeError(f"registry lacks category templates for {missing}")

    default_bpm = genres_raw["default_bpm"]
    fallback = genres_raw["fallback_genre"]
    if fallback not in genres:
        raise RuntimeError(f"fallback genre '{fallback}' is not registered")

    return GenreRegistry(
        version=int(genres_raw["version"]),
        genres=genres,
        aliases=aliases,
        default_time_signatures=tuple(genres_raw["default_time_signatures"]),
        default_bpm=TempoRange(min=int(default_bpm["min"]), max=int(default_bpm["max"])),
        fallback_genre=fallback,
        categories=categories,
    )


_REGISTRY = _load_registry()


def get_registry() -> GenreRegistry:
    return _REGISTRY
