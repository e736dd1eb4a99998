"""Renders selected fields into the Max and standard prompt dialects."""

from __future__ import annotations

from typing import Iterable, List, Sequence

from .blender import CategoryPick, DirectEnrichment

MAX_MODE_HEADER_LINES = (
    "[Is_MAX_MODE: MAX](MAX)",
    "[QUALITY: MAX](MAX)",
    "[REALISM: MAX](MAX)",
    "[REAL_INSTRUMENTS: MAX](MAX)",
)
MAX_MODE_HEADER = "\n".join(MAX_MODE_HEADER_LINES)
WORDLESS_VOCALS = "wordless vocals"


def instrument_list(instruments: Iterable[str], with_wordless_vocals: bool) -> List[str]:
    values = [value for value in instruments if value]
    if with_wordless_vocals and WORDLESS_VOCALS not in (value.casefold() for value in values):
        values.append(WORDLESS_VOCALS)
    return values


def is_header_line(line: str) -> bool:
    return line.strip() in MAX_MODE_HEADER_LINES


def strip_max_header(text: str) -> str:
    lines = text.splitlines()
    while lines and (is_header_line(lines[0]) or not lines[0].strip()):
        lines.pop(0)
    return "\n".join(lines)


def apply_max_header(text: str) -> str:
    return f"{MAX_MODE_HEADER}\n{strip_max_header(text)}"


def _joined(values: Sequence[str]) -> str:
    return ", ".join(value for value in values if value)


def format_direct(
    enrichment: DirectEnrichment, *, max_mode: bool, with_wordless_vocals: bool
) -> str:
    styles = _joined(enrichment.styles)
    instruments = _joined(instrument_list(enrichment.instruments, with_wordless_vocals))
    style_tags = _joined(enrichment.style_tags)
    if max_mode:
        lines = [
            MAX_MODE_HEADER,
            f'genre: "{styles}"',
            f'bpm: "{enrichment.bpm}"',
            f'instruments: "{instruments}"',
            f'style tags: "{style_tags}"',
            f'recording: "{enrichment.production}"',
        ]
        return "\n".join(lines)

    moods = _joined(enrichment.moods[:2])
    lines = [
        f"[{_joined([moods, styles])}]",
        "",
        f"Genre: {styles}",
        f"BPM: {enrichment.bpm}",
        f"Mood: {moods}",
        f"Instruments: {instruments}",
        f"Style Tags: {style_tags}",
        f"Recording: {enrichment.production}",
    ]
    return "\n".join(lines)


def format_category(pick: CategoryPick, *, max_mode: bool, with_wordless_vocals: bool) -> str:
    instruments = _joined(instrument_list(pick.instruments, with_wordless_vocals))
    if max_mode:
        return "\n".join(
            [
                f'Genre: "{pick.genre}"',
                f'Mood: "{pick.mood}"',
                f'Instruments: "{instruments}"',
            ]
        )
    return "\n".join([f"{pick.mood} {pick.genre}", f"Instruments: {instruments}"])


def format_custom(style: str, *, max_mode: bool) -> str:
    body = strip_max_header(style).strip()
    return apply_max_header(body) if max_mode else body
