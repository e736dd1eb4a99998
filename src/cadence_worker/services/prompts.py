"""System/user prompt pairs for every LLM-backed stage."""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

from ..app.models import GenerationRequest
from .blender import PerformanceGuidance

PromptPair = Tuple[str, str]

DEFAULT_LYRICS_TOPIC = "creative expression"

_STYLE_JSON_CONTRACT = (
    "Respond with a single JSON object and nothing else, shaped exactly as "
    '{"style": "<music style prompt>", "title": "<song title>"}.'
)

_STYLE_SYSTEM = (
    "You write concise music style prompts for a text-to-music model. "
    "Describe genre, mood, tempo, instrumentation and production in plain language. "
    "Never mention artist names or copyrighted song titles. "
    "Keep the style under {max_chars} characters. "
)

_TITLE_SYSTEM = (
    "You name songs. Reply with one evocative title of two to six words. "
    "No quotes, no explanation, no trailing punctuation."
)

_LYRICS_SYSTEM = (
    "You write original song lyrics that fit the described musical style. "
    "Write verses and a repeating chorus; avoid cliches and artist references."
)

_EXTENDED_TAGS_NOTE = (
    "Mark every section with a bracketed tag on its own line, for example "
    "[Intro], [Verse 1], [Pre-Chorus], [Chorus], [Bridge], [Outro]."
)

_CONDENSE_SYSTEM = (
    "You shorten music style prompts. Keep every field line and its key, keep the "
    "musical meaning, drop redundant adjectives. Output only the rewritten prompt."
)


def _guidance_block(guidance: Optional[PerformanceGuidance]) -> str:
    if guidance is None:
        return ""
    lines = "\n".join(f"- {line}" for line in guidance.as_lines())
    return f"\n\nPerformance guidance blended from the seed genres:\n{lines}"


def lyrics_topic(request: GenerationRequest) -> str:
    return request.lyrics_topic.strip() or request.description.strip() or DEFAULT_LYRICS_TOPIC


def custom_style_prompts(
    request: GenerationRequest,
    *,
    seed_genre_names: Sequence[str],
    guidance: Optional[PerformanceGuidance],
    target_genre_count: Optional[int] = None,
    max_chars: int,
) -> PromptPair:
    system = _STYLE_SYSTEM.format(max_chars=max_chars) + _STYLE_JSON_CONTRACT
    parts = []
    if request.description.strip():
        parts.append(f"Idea: {request.description.strip()}")
    else:
        parts.append("Idea: surprise me with an original, cohesive style.")
    if seed_genre_names:
        parts.append(f"Blend these genres: {', '.join(seed_genre_names)}")
    if target_genre_count:
        parts.append(f"Name exactly {target_genre_count} genre(s) in the style.")
    if request.with_wordless_vocals:
        parts.append("Include wordless vocals as an instrument.")
    return system, "\n".join(parts) + _guidance_block(guidance)


def refine_style_prompts(
    *,
    current_style: str,
    current_title: Optional[str],
    feedback: str,
    guidance: Optional[PerformanceGuidance],
    max_chars: int,
) -> PromptPair:
    system = _STYLE_SYSTEM.format(max_chars=max_chars) + _STYLE_JSON_CONTRACT + (
        " You are revising an existing prompt: change only what the feedback asks for."
    )
    user = (
        f"Current style:\n{current_style}\n\n"
        f"Current title: {current_title or 'Untitled'}\n\n"
        f"Feedback: {feedback.strip() or 'Offer a fresh variation with the same character.'}"
    )
    return system, user + _guidance_block(guidance)


def title_prompts(*, styles: Sequence[str], moods: Sequence[str], topic: str) -> PromptPair:
    user = f"Style: {', '.join(styles)}"
    if moods:
        user += f"\nMood: {', '.join(moods)}"
    if topic:
        user += f"\nTheme: {topic}"
    return _TITLE_SYSTEM, user


def refine_title_prompts(*, current_title: str, feedback: str, styles: Sequence[str]) -> PromptPair:
    user = (
        f"Current title: {current_title}\n"
        f"Style: {', '.join(styles)}\n"
        f"Feedback: {feedback.strip()}\n"
        "Write a new title that follows the feedback."
    )
    return _TITLE_SYSTEM, user


def lyrics_prompts(
    *, title: str, style: str, topic: str, use_extended_tags: bool
) -> PromptPair:
    system = _LYRICS_SYSTEM + (f" {_EXTENDED_TAGS_NOTE}" if use_extended_tags else "")
    user = f"Title: {title}\nStyle: {style}\nTopic: {topic}"
    return system, user


def refine_lyrics_prompts(
    *, current_lyrics: str, feedback: str, title: str, use_extended_tags: bool
) -> PromptPair:
    system = _LYRICS_SYSTEM + " Revise the given lyrics according to the feedback."
    if use_extended_tags:
        system += f" {_EXTENDED_TAGS_NOTE}"
    user = f"Title: {title}\nFeedback: {feedback.strip()}\n\nCurrent lyrics:\n{current_lyrics}"
    return system, user


def condense_prompts(text: str, max_chars: int) -> PromptPair:
    user = f"Rewrite this prompt in at most {max_chars} characters:\n\n{text}"
    return _CONDENSE_SYSTEM, user
