"""Request validation, dispatch to the generation strategies, and single-field remixes."""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

from loguru import logger

from ..app.models import (
    CategoryMode,
    CustomMode,
    DirectMode,
    GenerationRequest,
    GenerationResult,
    RemixField,
    RequestMode,
)
from ..app.settings import Settings
from . import prompts
from .blender import GenreBlender
from .exceptions import CadenceError, GenerationError, ValidationError
from .fields import clamp_genre_count
from .formatter import format_category, format_custom, format_direct, strip_max_header
from .llm import CallOptions, LLMGateway
from .postprocess import (
    DEFAULT_TITLE,
    clean_title,
    enforce_genre_count,
    enforce_length,
    parse_style_title,
)
from .rng import RngStream, default_rng
from .trace import TraceRecorder

MAX_STYLE_TAGS = 4


def resolve_mode(request: GenerationRequest) -> RequestMode:
    """Build the single strategy a request selects, rejecting contradictory input."""
    if len(request.style_tags) > MAX_STYLE_TAGS:
        raise ValidationError(
            f"at most {MAX_STYLE_TAGS} style tags are allowed (got {len(request.style_tags)})",
            field="style_tags",
        )
    styles = tuple(tag.strip() for tag in request.style_tags if tag.strip())
    seeds = tuple(genre.strip() for genre in request.seed_genres if genre.strip())
    populated = [
        name
        for name, present in (
            ("style_tags", bool(styles)),
            ("seed_genres", bool(seeds)),
            ("category", request.category is not None),
        )
        if present
    ]
    if len(populated) > 1:
        raise ValidationError(
            f"{' and '.join(populated)} are mutually exclusive; supply only one",
            field=populated[-1],
        )
    if styles:
        return DirectMode(styles=styles)
    if request.category is not None:
        return CategoryMode(category=request.category)
    target = request.target_genre_count
    return CustomMode(
        description=request.description.strip(),
        seed_genres=seeds,
        target_genre_count=clamp_genre_count(target) if target is not None else None,
    )


def mode_name(mode: RequestMode) -> str:
    if isinstance(mode, DirectMode):
        return "direct"
    if isinstance(mode, CategoryMode):
        return "category"
    return "custom"


async def run_traced(
    recorder: Optional[TraceRecorder],
    summary: str,
    work: Callable[[], Awaitable[GenerationResult]],
) -> GenerationResult:
    """Wrap ``work`` in run.start/run.end events and attach the finalized trace."""
    if recorder is None:
        return await work()
    recorder.run_start(summary)
    try:
        result = await work()
    except CadenceError as exc:
        recorder.error(exc)
        exc.trace = recorder.finalize()
        raise
    recorder.run_end(f"text {len(result.text)} chars, title {result.title!r}")
    return result.model_copy(update={"trace": recorder.finalize()})


class ModeRouter:
    """Validates a request and dispatches it to one generation strategy."""

    def __init__(
        self,
        settings: Settings,
        gateway: LLMGateway,
        blender: Optional[GenreBlender] = None,
    ) -> None:
        self._settings = settings
        self._gateway = gateway
        self._blender = blender or GenreBlender()

    @property
    def blender(self) -> GenreBlender:
        return self._blender

    @property
    def gateway(self) -> LLMGateway:
        return self._gateway

    def new_recorder(
        self, rng: RngStream, action: str, trace: Optional[bool]
    ) -> Optional[TraceRecorder]:
        enabled = self._settings.trace_enabled if trace is None else trace
        if not enabled:
            return None
        return TraceRecorder(
            seed=rng.seed, action=action, cap_bytes=self._settings.trace_cap_bytes
        )

    async def route(
        self,
        request: GenerationRequest,
        *,
        rng: Optional[RngStream] = None,
        trace: Optional[bool] = None,
    ) -> GenerationResult:
        mode = resolve_mode(request)
        stream = rng or default_rng()
        recorder = self.new_recorder(stream, "generate", trace)
        logger.info("routing request via {} mode (seed {})", mode_name(mode), stream.seed)
        return await run_traced(
            recorder,
            f"generate {mode_name(mode)}",
            lambda: self._dispatch(mode, request, stream, recorder),
        )

    async def remix(
        self,
        prior: GenerationResult,
        field: RemixField,
        *,
        rng: Optional[RngStream] = None,
        trace: Optional[bool] = None,
        target_genre_count: Optional[int] = None,
    ) -> GenerationResult:
        """Redraw one field of ``prior.text``; title and lyrics are carried over."""
        if not prior.text.strip():
            raise ValidationError("remix needs a non-empty prompt", field="prior.text")
        stream = rng or default_rng()
        recorder = self.new_recorder(stream, "remix", trace)
        logger.info("remixing {} field (seed {})", field, stream.seed)

        async def work() -> GenerationResult:
            text = self._blender.remix(
                prior.text,
                field,
                stream,
                trace=recorder,
                target_genre_count=target_genre_count,
            )
            return GenerationResult(text=text, title=prior.title, lyrics=prior.lyrics)

        return await run_traced(recorder, f"remix {field}", work)

    async def _dispatch(
        self,
        mode: RequestMode,
        request: GenerationRequest,
        rng: RngStream,
        trace: Optional[TraceRecorder],
    ) -> GenerationResult:
        if isinstance(mode, DirectMode):
            _decide(trace, "direct", "style tags supplied; used verbatim")
            return await self._generate_direct(mode, request, rng, trace)
        if isinstance(mode, CategoryMode):
            _decide(trace, "category", f"category {mode.category.value} selected; no LLM calls")
            return self._generate_category(mode, request, rng, trace)
        _decide(trace, "custom", "no style tags or category; LLM writes the style")
        return await self._generate_custom(mode, request, rng, trace)

    async def _generate_direct(
        self,
        mode: DirectMode,
        request: GenerationRequest,
        rng: RngStream,
        trace: Optional[TraceRecorder],
    ) -> GenerationResult:
        enrichment = self._blender.enrich_direct(mode.styles, rng, trace=trace)
        text = format_direct(
            enrichment,
            max_mode=request.max_mode,
            with_wordless_vocals=request.with_wordless_vocals,
        )
        system, user = prompts.title_prompts(
            styles=mode.styles, moods=enrichment.moods, topic=prompts.lyrics_topic(request)
        )
        title = await self.generate_title(system, user, fallback=DEFAULT_TITLE, trace=trace)
        lyrics = None
        if request.with_lyrics:
            lyrics = await self.generate_lyrics(title, text, request, trace=trace)
        return GenerationResult(text=text, title=title, lyrics=lyrics)

    def _generate_category(
        self,
        mode: CategoryMode,
        request: GenerationRequest,
        rng: RngStream,
        trace: Optional[TraceRecorder],
    ) -> GenerationResult:
        pick = self._blender.build_category(mode.category, rng, trace=trace)
        text = format_category(
            pick, max_mode=request.max_mode, with_wordless_vocals=request.with_wordless_vocals
        )
        if request.with_lyrics and trace is not None:
            trace.decision(
                "lyrics", "category.lyrics", "skipped", why="category mode makes no LLM calls"
            )
        return GenerationResult(text=text, title=pick.title)

    async def _generate_custom(
        self,
        mode: CustomMode,
        request: GenerationRequest,
        rng: RngStream,
        trace: Optional[TraceRecorder],
    ) -> GenerationResult:
        seed_ids = self._blender.parse_many(mode.seed_genres)
        if mode.seed_genres and not seed_ids:
            logger.info("no registry genre among seeds {}", list(mode.seed_genres))
        guidance = self._blender.build_guidance(seed_ids, rng, trace=trace)
        system, user = prompts.custom_style_prompts(
            request,
            seed_genre_names=[self._blender.registry.display_name(g) for g in seed_ids],
            guidance=guidance,
            target_genre_count=mode.target_genre_count,
            max_chars=self._settings.max_prompt_chars,
        )
        raw = await self._gateway.call(
            system, user, CallOptions(error_context="generate.style", label="style"), trace=trace
        )
        style, title = parse_style_title(raw, stage="generate.style")
        text = await self.finish_style(
            style,
            max_mode=request.max_mode,
            target_genre_count=mode.target_genre_count,
            rng=rng,
            trace=trace,
        )
        lyrics = None
        if request.with_lyrics:
            lyrics = await self.generate_lyrics(title, text, request, trace=trace)
        return GenerationResult(text=text, title=title, lyrics=lyrics)

    async def finish_style(
        self,
        style: str,
        *,
        max_mode: bool,
        target_genre_count: Optional[int],
        rng: RngStream,
        trace: Optional[TraceRecorder],
    ) -> str:
        """Render the dialect, then apply genre-count and length post-processing."""
        text = format_custom(style, max_mode=max_mode)
        if target_genre_count is not None:
            text = enforce_genre_count(text, target_genre_count, rng, blender=self._blender)
            if trace is not None:
                trace.decision(
                    "postprocess",
                    "postprocess.genre_count",
                    str(target_genre_count),
                    why="requested genre count enforced on the genre field",
                )

        max_chars = self._settings.max_prompt_chars

        async def condense(value: str) -> str:
            system, user = prompts.condense_prompts(strip_max_header(value), max_chars)
            condensed = await self._gateway.call(
                system,
                user,
                CallOptions(error_context="postprocess.condense", label="condense"),
                trace=trace,
            )
            return format_custom(condensed, max_mode=max_mode)

        result = await enforce_length(
            text, max_chars, condense, min_chars=self._settings.min_prompt_chars
        )
        if trace is not None and result is not text:
            trace.decision(
                "postprocess",
                "postprocess.length",
                f"{len(text)} -> {len(result)} chars",
                why=f"prompt exceeded {max_chars} characters",
            )
        return result

    async def generate_title(
        self,
        system: str,
        user: str,
        *,
        fallback: str,
        trace: Optional[TraceRecorder],
        stage: str = "generate.title",
        label: str = "title",
    ) -> str:
        """LLM title with a fixed fallback; a failed title never fails the request."""
        try:
            raw = await self._gateway.call(
                system, user, CallOptions(error_context=stage, label=label), trace=trace
            )
        except GenerationError as exc:
            logger.warning("title generation failed, using {!r}: {}", fallback, exc)
            if trace is not None:
                trace.error(exc)
                trace.decision("title", label, fallback, why="title generation failed")
            return fallback
        return clean_title(raw, fallback=fallback)

    async def generate_lyrics(
        self,
        title: str,
        style_text: str,
        request: GenerationRequest,
        *,
        trace: Optional[TraceRecorder],
    ) -> Optional[str]:
        system, user = prompts.lyrics_prompts(
            title=title,
            style=strip_max_header(style_text),
            topic=prompts.lyrics_topic(request),
            use_extended_tags=request.use_extended_tags,
        )
        return await self.call_lyrics(system, user, trace=trace)

    async def call_lyrics(
        self, system: str, user: str, *, trace: Optional[TraceRecorder]
    ) -> Optional[str]:
        try:
            return await self._gateway.call(
                system, user, CallOptions(error_context="generate.lyrics", label="lyrics"), trace=trace
            )
        except GenerationError as exc:
            logger.warning("lyrics generation failed, returning none: {}", exc)
            if trace is not None:
                trace.error(exc)
                trace.decision("lyrics", "lyrics", "none", why="lyrics generation failed")
            return None


def _decide(trace: Optional[TraceRecorder], branch: str, why: str) -> None:
    if trace is not None:
        trace.decision("mode", "router.mode", branch, why=why)
