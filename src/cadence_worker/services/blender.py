"""Genre parsing and frequency-weighted blending of registry pools."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Hashable, Iterable, List, Optional, Sequence, Tuple, TypeVar

from loguru import logger

from ..app.models import DecisionDomain, RemixField, SelectionDetails, VibeCategory
from .exceptions import InvariantError
from .fields import clamp_genre_count, find_field, rewrite_field, split_list
from .registry import GENRE_FIELDS, GenreRegistry, TempoRange, get_registry
from .rng import RngStream, shuffled
from .trace import TraceRecorder
from .weighting import Selection, WeightedPool, select_many_weighted, select_weighted

T = TypeVar("T", bound=Hashable)

BPM_NARROW_SPAN = 30
TITLE_CONTEXT_PROBABILITY = 0.5
DIRECT_INSTRUMENT_COUNT = 4
GUIDANCE_INSTRUMENT_COUNT = 3

_TOKEN_PATTERN = re.compile(r"[^\s,/&+\-]+")
_PREVIEW_LIMIT = 8

_REMIX_DOMAINS: Dict[str, DecisionDomain] = {
    "genre": "genre",
    "mood": "mood",
    "instruments": "instruments",
    "style_tags": "other",
    "recording": "production",
}


@dataclass(frozen=True)
class PerformanceGuidance:
    genre_ids: Tuple[str, ...]
    time_signature: Optional[str]
    bpm: TempoRange
    instruments: Tuple[str, ...]
    chord_progression: Optional[str]
    production: Optional[str]

    def as_lines(self) -> List[str]:
        lines = [f"Tempo: {self.bpm} BPM"]
        if self.time_signature:
            lines.append(f"Time signature: {self.time_signature}")
        if self.instruments:
            lines.append(f"Suggested instruments: {', '.join(self.instruments)}")
        if self.chord_progression:
            lines.append(f"Harmony: {self.chord_progression}")
        if self.production:
            lines.append(f"Production: {self.production}")
        return lines


@dataclass(frozen=True)
class DirectEnrichment:
    styles: Tuple[str, ...]
    genre_ids: Tuple[str, ...]
    bpm: TempoRange
    instruments: Tuple[str, ...]
    moods: Tuple[str, ...]
    style_tags: Tuple[str, ...]
    production: str


@dataclass(frozen=True)
class CategoryPick:
    category: VibeCategory
    genre: str
    mood: str
    instruments: Tuple[str, ...]
    title: str


def _selection_details(selection: Selection) -> SelectionDetails:
    return SelectionDetails(
        method="weighted_pool",
        chosen_index=selection.index,
        candidates_count=len(selection.candidates),
        candidates_preview=[str(item) for item in selection.candidates[:_PREVIEW_LIMIT]],
        rolls=list(selection.rolls),
    )


class GenreBlender:
    """Blends the pools of one or more registry genres into musical parameters."""

    def __init__(self, registry: Optional[GenreRegistry] = None) -> None:
        self._registry = registry or get_registry()
        multiword = [
            alias
            for alias in self._registry.aliases
            if _TOKEN_PATTERN.fullmatch(alias) is None
        ]
        multiword.sort(key=len, reverse=True)
        self._multiword_patterns = [
            (
                re.compile(rf"(?<![a-z0-9]){re.escape(alias)}(?![a-z0-9])"),
                self._registry.aliases[alias],
            )
            for alias in multiword
        ]

    @property
    def registry(self) -> GenreRegistry:
        return self._registry

    def parse_genre_components(self, text: str) -> List[str]:
        """Recognised genre ids in ``text``, first-seen order, unknown tokens dropped."""
        folded = text.casefold().strip()
        if not folded:
            return []
        whole = self._registry.resolve(folded)
        if whole is not None:
            return [whole]

        hits: List[Tuple[int, str]] = []
        remainder = folded
        for pattern, genre_id in self._multiword_patterns:
            for match in pattern.finditer(remainder):
                hits.append((match.start(), genre_id))
                span = match.end() - match.start()
                remainder = remainder[: match.start()] + " " * span + remainder[match.end() :]
        for match in _TOKEN_PATTERN.finditer(remainder):
            token = match.group(0)
            if token == "and":
                continue
            genre_id = self._registry.resolve(token)
            if genre_id is not None:
                hits.append((match.start(), genre_id))

        ordered: List[str] = []
        for _, genre_id in sorted(hits, key=lambda hit: hit[0]):
            if genre_id not in ordered:
                ordered.append(genre_id)
        return ordered

    def parse_many(self, values: Iterable[str]) -> List[str]:
        ordered: List[str] = []
        for value in values:
            for genre_id in self.parse_genre_components(value):
                if genre_id not in ordered:
                    ordered.append(genre_id)
        return ordered

    def blend(self, genre_ids: Sequence[str], field: str) -> WeightedPool:
        if field not in GENRE_FIELDS:
            raise ValueError(f"unknown blend field '{field}'")
        sources = []
        for genre_id in genre_ids:
            genre = self._registry.get(genre_id)
            if genre is None:
                continue
            values = getattr(genre, field)
            sources.append((values,) if isinstance(values, TempoRange) else values)
        return WeightedPool.from_sources(sources)

    def select(
        self,
        pool: WeightedPool[T],
        rng: RngStream,
        *,
        trace: Optional[TraceRecorder] = None,
        domain: DecisionDomain = "other",
        key: str = "blend.select",
    ) -> Optional[T]:
        selection = select_weighted(pool, rng)
        if selection is None:
            return None
        if trace is not None:
            frequency = pool.frequency[selection.value]
            source = "top half" if selection.from_top_half else "full pool"
            trace.decision(
                domain,
                key,
                str(selection.value),
                why=f"shared by {frequency} genre(s); drawn from {source}",
                selection=_selection_details(selection),
            )
        return selection.value

    def select_many(
        self,
        pool: WeightedPool[T],
        rng: RngStream,
        count: int,
        *,
        trace: Optional[TraceRecorder] = None,
        domain: DecisionDomain = "other",
        key: str = "blend.select_many",
    ) -> List[T]:
        picks = select_many_weighted(pool, rng, count)
        if trace is not None:
            for position, selection in enumerate(picks):
                trace.decision(
                    domain,
                    f"{key}[{position}]",
                    str(selection.value),
                    why=f"shared by {pool.frequency[selection.value]} genre(s)",
                    selection=_selection_details(selection),
                )
        return [selection.value for selection in picks]

    def pick(
        self,
        items: Sequence[T],
        rng: RngStream,
        *,
        trace: Optional[TraceRecorder] = None,
        domain: DecisionDomain = "other",
        key: str = "pick",
    ) -> T:
        if not items:
            raise InvariantError(f"{key} called with an empty pool")
        roll = rng.next()
        index = min(int(roll * len(items)), len(items) - 1)
        value = items[index]
        if trace is not None:
            trace.decision(
                domain,
                key,
                str(value),
                selection=SelectionDetails(
                    method="pick_random",
                    chosen_index=index,
                    candidates_count=len(items),
                    candidates_preview=[str(item) for item in items[:_PREVIEW_LIMIT]],
                    rolls=[roll],
                ),
            )
        return value

    def blended_time_signature(
        self,
        genre_ids: Sequence[str],
        rng: RngStream,
        *,
        trace: Optional[TraceRecorder] = None,
    ) -> Optional[str]:
        pool = self.blend(genre_ids, "time_signatures")
        if not pool.items:
            pool = WeightedPool.uniform(self._registry.default_time_signatures)
        return self.select(pool, rng, trace=trace, domain="time_signature", key="blend.time_signature")

    def blended_bpm_range(self, genre_ids: Sequence[str]) -> TempoRange:
        """Intersection of the genre tempo ranges, or a narrowed union when disjoint."""
        ranges = [
            genre.bpm
            for genre in (self._registry.get(genre_id) for genre_id in genre_ids)
            if genre is not None
        ]
        if not ranges:
            return self._registry.default_bpm
        low = max(tempo.min for tempo in ranges)
        high = min(tempo.max for tempo in ranges)
        if low <= high:
            return TempoRange(min=low, max=high)
        union_low = min(tempo.min for tempo in ranges)
        union_high = max(tempo.max for tempo in ranges)
        midpoint = (union_low + union_high) // 2
        return TempoRange(
            min=max(union_low, midpoint - BPM_NARROW_SPAN),
            max=min(union_high, midpoint + BPM_NARROW_SPAN),
        )

    def build_guidance(
        self,
        genre_ids: Sequence[str],
        rng: RngStream,
        *,
        trace: Optional[TraceRecorder] = None,
    ) -> Optional[PerformanceGuidance]:
        recognised = [genre_id for genre_id in genre_ids if self._registry.get(genre_id)]
        if not recognised:
            return None
        time_signature = self.blended_time_signature(recognised, rng, trace=trace)
        instruments = self.select_many(
            self.blend(recognised, "instruments"),
            rng,
            GUIDANCE_INSTRUMENT_COUNT,
            trace=trace,
            domain="instruments",
            key="guidance.instruments",
        )
        progression = self.select(
            self.blend(recognised, "chord_progressions"),
            rng,
            trace=trace,
            domain="chord_progression",
            key="guidance.chord_progression",
        )
        production = self.select(
            self.blend(recognised, "production"),
            rng,
            trace=trace,
            domain="production",
            key="guidance.production",
        )
        bpm = self.blended_bpm_range(recognised)
        if trace is not None:
            trace.decision("bpm", "guidance.bpm", str(bpm), why="intersection of genre tempo ranges")
        return PerformanceGuidance(
            genre_ids=tuple(recognised),
            time_signature=time_signature,
            bpm=bpm,
            instruments=tuple(instruments),
            chord_progression=progression,
            production=production,
        )

    def enrich_direct(
        self,
        styles: Sequence[str],
        rng: RngStream,
        *,
        trace: Optional[TraceRecorder] = None,
    ) -> DirectEnrichment:
        """Deterministic instruments and production language around verbatim styles."""
        genre_ids = self.parse_many(styles)
        if not genre_ids:
            genre_ids = [self._registry.fallback_genre]
            logger.debug("no registry genre in styles {}; using fallback pools", list(styles))
            if trace is not None:
                trace.decision(
                    "genre",
                    "direct.genres",
                    self._registry.fallback_genre,
                    why="no style tag matched a registry genre",
                )
        elif trace is not None:
            trace.decision(
                "genre",
                "direct.genres",
                ", ".join(genre_ids),
                why="genres recognised in style tags",
            )

        instruments = self.select_many(
            self.blend(genre_ids, "instruments"),
            rng,
            DIRECT_INSTRUMENT_COUNT,
            trace=trace,
            domain="instruments",
            key="direct.instruments",
        )
        moods = self.select_many(
            self.blend(genre_ids, "moods"), rng, 2, trace=trace, domain="mood", key="direct.moods"
        )
        style_tags = self.select_many(
            self.blend(genre_ids, "style_tags"),
            rng,
            2,
            trace=trace,
            domain="other",
            key="direct.style_tags",
        )
        production = self.select(
            self.blend(genre_ids, "production"),
            rng,
            trace=trace,
            domain="production",
            key="direct.production",
        )
        return DirectEnrichment(
            styles=tuple(styles),
            genre_ids=tuple(genre_ids),
            bpm=self.blended_bpm_range(genre_ids),
            instruments=tuple(instruments),
            moods=tuple(moods),
            style_tags=tuple(style_tags),
            production=production or "",
        )

    def build_category(
        self,
        category: VibeCategory,
        rng: RngStream,
        *,
        trace: Optional[TraceRecorder] = None,
    ) -> CategoryPick:
        template = self._registry.category(category)
        genre = self.pick(template.genres, rng, trace=trace, domain="genre", key="category.genre")
        instruments = self.pick(
            template.instruments, rng, trace=trace, domain="instruments", key="category.instruments"
        )
        mood = self.pick(template.moods, rng, trace=trace, domain="mood", key="category.mood")

        words = template.title_words
        adjective = self.pick(words.adjectives, rng)
        noun = self.pick(words.nouns, rng)
        title = f"{adjective} {noun}"
        if rng.next() < TITLE_CONTEXT_PROBABILITY:
            title = f"{title} {self.pick(words.contexts, rng)}"
        if trace is not None:
            trace.decision("title", "category.title", title, why="template title words")

        return CategoryPick(
            category=category,
            genre=genre,
            mood=mood,
            instruments=tuple(instruments),
            title=title,
        )

    def genres_in_text(self, text: str) -> List[str]:
        """Registry genre ids named by the ``genre`` field of a rendered prompt."""
        match = find_field(text, "genre")
        if match is None:
            return []
        return self.parse_many(split_list(match.group("value")))

    def remix(
        self,
        text: str,
        field: RemixField,
        rng: RngStream,
        *,
        trace: Optional[TraceRecorder] = None,
        target_genre_count: Optional[int] = None,
    ) -> str:
        """Redraw one field line of a rendered prompt from the registry pools.

        Every other line is returned untouched, except that a genre remix also
        rewrites an existing ``bpm`` line to the tempo range of the new genres.
        A prompt without the requested field comes back unchanged. Values are
        drawn from the pools of the genres the prompt already names, or from
        the fallback genre when it names none.
        """
        match = find_field(text, field)
        if match is None:
            logger.info("prompt has no {} field; remix left it unchanged", field)
            if trace is not None:
                trace.decision(
                    _REMIX_DOMAINS[field],
                    f"remix.{field}",
                    "unchanged",
                    why=f"prompt has no {field} field",
                )
            return text
        if field == "genre":
            return self._remix_genre(text, match, rng, trace, target_genre_count)

        genre_ids = self.genres_in_text(text) or [self._registry.fallback_genre]
        domain = _REMIX_DOMAINS[field]
        key = f"remix.{field}"
        if field == "mood":
            count = 2 if rng.next() < 0.5 else 3
            values = self.select_many(
                self.blend(genre_ids, "moods"), rng, count, trace=trace, domain=domain, key=key
            )
        elif field == "instruments":
            values = self.select_many(
                self.blend(genre_ids, "instruments"),
                rng,
                DIRECT_INSTRUMENT_COUNT,
                trace=trace,
                domain=domain,
                key=key,
            )
        elif field == "style_tags":
            values = self.select_many(
                self.blend(genre_ids, "style_tags"), rng, 2, trace=trace, domain=domain, key=key
            )
        else:
            production = self.select(
                self.blend(genre_ids, "production"), rng, trace=trace, domain=domain, key=key
            )
            values = [production] if production else []
        if not values:
            return text
        return rewrite_field(text, match, ", ".join(values))

    def _remix_genre(
        self,
        text: str,
        match: re.Match[str],
        rng: RngStream,
        trace: Optional[TraceRecorder],
        target_genre_count: Optional[int],
    ) -> str:
        current = split_list(match.group("value"))
        target = clamp_genre_count(
            target_genre_count if target_genre_count is not None else len(current) or 1
        )
        exclude = current + self.parse_many(current)
        genres = self.random_genres(rng, target, exclude=exclude)
        if not genres:
            return text
        if trace is not None:
            trace.decision(
                "genre",
                "remix.genre",
                ", ".join(genres),
                why=f"replaced '{', '.join(current) or 'none'}' with {len(genres)} new genre(s)",
                selection=SelectionDetails(
                    method="shuffle_slice",
                    candidates_count=len(self._registry.genre_ids()),
                    candidates_preview=genres[:_PREVIEW_LIMIT],
                ),
            )
        remixed = rewrite_field(text, match, ", ".join(genres))

        bpm_match = find_field(remixed, "bpm")
        if bpm_match is None:
            return remixed
        bpm = self.blended_bpm_range(self.parse_many(genres))
        if trace is not None:
            trace.decision("bpm", "remix.bpm", str(bpm), why="tempo range of the new genres")
        return rewrite_field(remixed, bpm_match, str(bpm))

    def random_genres(self, rng: RngStream, count: int, exclude: Iterable[str] = ()) -> List[str]:
        """Up to ``count`` registry genre names not present in ``exclude``."""
        excluded = {value.casefold().strip() for value in exclude}
        candidates = []
        for genre_id in self._registry.genre_ids():
            name = self._registry.display_name(genre_id).casefold()
            if name in excluded or genre_id in excluded:
                continue
            candidates.append(name)
        return shuffled(rng, candidates)[:count]

