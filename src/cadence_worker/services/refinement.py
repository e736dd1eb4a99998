"""Feedback-driven refinement that reuses the strategy of the original request."""

from __future__ import annotations

from typing import Optional

from loguru import logger

from ..app.models import (
    CategoryMode,
    CustomMode,
    DirectMode,
    GenerationRequest,
    GenerationResult,
    RequestMode,
    VibeCategory,
)
from ..app.settings import Settings
from . import prompts
from .exceptions import InvariantError
from .formatter import format_category, format_direct, strip_max_header
from .llm import CallOptions
from .postprocess import DEFAULT_TITLE, parse_style_title
from .rng import RngStream, default_rng, rng_for_feedback
from .router import ModeRouter, mode_name, resolve_mode, run_traced
from .trace import TraceRecorder


class RefinementEngine:
    """Re-dispatches a prior artifact plus feedback through its original strategy.

    Direct-mode artifacts keep their title and lyrics byte-identical unless
    feedback text is present. Category artifacts are rebuilt from a stream
    seeded by the feedback hash, so identical feedback reproduces the same
    variation. Everything else goes back through the LLM with a refinement
    prompt and the shared post-processing.
    """

    def __init__(self, settings: Settings, router: ModeRouter) -> None:
        self._settings = settings
        self._router = router

    async def refine(
        self,
        prior: GenerationResult,
        feedback: str,
        request: GenerationRequest,
        *,
        rng: Optional[RngStream] = None,
        trace: Optional[bool] = None,
    ) -> GenerationResult:
        mode = resolve_mode(request)
        feedback = (feedback or request.feedback_text).strip()
        if rng is not None:
            stream = rng
        elif isinstance(mode, CustomMode):
            stream = default_rng()
        else:
            stream = rng_for_feedback(feedback)
        recorder = self._router.new_recorder(stream, "refine", trace)
        logger.info(
            "refining {} artifact ({} feedback chars)", mode_name(mode), len(feedback)
        )
        return await run_traced(
            recorder,
            f"refine {mode_name(mode)}",
            lambda: self._dispatch(mode, prior, feedback, request, stream, recorder),
        )

    async def _dispatch(
        self,
        mode: RequestMode,
        prior: GenerationResult,
        feedback: str,
        request: GenerationRequest,
        rng: RngStream,
        trace: Optional[TraceRecorder],
    ) -> GenerationResult:
        if trace is not None:
            trace.decision(
                "mode",
                "refine.mode",
                mode_name(mode),
                why="strategy of the original request",
            )
        if isinstance(mode, DirectMode):
            return await self._refine_direct(mode, prior, feedback, request, rng, trace)
        if isinstance(mode, CategoryMode):
            return self.refine_category(mode.category, prior, request, rng, trace)
        return await self._refine_custom(mode, prior, feedback, request, rng, trace)

    async def _refine_direct(
        self,
        mode: DirectMode,
        prior: GenerationResult,
        feedback: str,
        request: GenerationRequest,
        rng: RngStream,
        trace: Optional[TraceRecorder],
    ) -> GenerationResult:
        enrichment = self._router.blender.enrich_direct(mode.styles, rng, trace=trace)
        text = format_direct(
            enrichment,
            max_mode=request.max_mode,
            with_wordless_vocals=request.with_wordless_vocals,
        )
        if not feedback:
            if trace is not None:
                trace.decision(
                    "title", "refine.title", "unchanged", why="no feedback; title and lyrics kept"
                )
            return GenerationResult(text=text, title=prior.title, lyrics=prior.lyrics)

        current_title = prior.title or DEFAULT_TITLE
        system, user = prompts.refine_title_prompts(
            current_title=current_title, feedback=feedback, styles=mode.styles
        )
        title = await self._router.generate_title(
            system,
            user,
            fallback=current_title,
            trace=trace,
            stage="refine.title",
            label="refine.title",
        )
        lyrics = prior.lyrics
        if request.with_lyrics:
            lyrics = await self._refresh_lyrics(prior, feedback, title, text, request, trace)
        return GenerationResult(text=text, title=title, lyrics=lyrics)

    def refine_category(
        self,
        category: Optional[VibeCategory],
        prior: GenerationResult,
        request: GenerationRequest,
        rng: RngStream,
        trace: Optional[TraceRecorder],
    ) -> GenerationResult:
        if category is None:
            raise InvariantError("deterministic refinement requires a category")
        pick = self._router.blender.build_category(category, rng, trace=trace)
        text = format_category(
            pick, max_mode=request.max_mode, with_wordless_vocals=request.with_wordless_vocals
        )
        return GenerationResult(text=text, title=pick.title, lyrics=prior.lyrics)

    async def _refine_custom(
        self,
        mode: CustomMode,
        prior: GenerationResult,
        feedback: str,
        request: GenerationRequest,
        rng: RngStream,
        trace: Optional[TraceRecorder],
    ) -> GenerationResult:
        blender = self._router.blender
        seed_ids = blender.parse_many(mode.seed_genres)
        guidance = blender.build_guidance(seed_ids, rng, trace=trace)
        system, user = prompts.refine_style_prompts(
            current_style=strip_max_header(prior.text),
            current_title=prior.title,
            feedback=feedback,
            guidance=guidance,
            max_chars=self._settings.max_prompt_chars,
        )
        raw = await self._router.gateway.call(
            system,
            user,
            CallOptions(error_context="refine.style", label="refine.style"),
            trace=trace,
        )
        style, title = parse_style_title(raw, stage="refine.style")
        text = await self._router.finish_style(
            style,
            max_mode=request.max_mode,
            target_genre_count=mode.target_genre_count,
            rng=rng,
            trace=trace,
        )
        lyrics = prior.lyrics
        if request.with_lyrics:
            lyrics = await self._refresh_lyrics(prior, feedback, title, text, request, trace)
        return GenerationResult(text=text, title=title, lyrics=lyrics)

    async def _refresh_lyrics(
        self,
        prior: GenerationResult,
        feedback: str,
        title: str,
        text: str,
        request: GenerationRequest,
        trace: Optional[TraceRecorder],
    ) -> Optional[str]:
        if not prior.lyrics:
            return await self._router.generate_lyrics(title, text, request, trace=trace)
        if not feedback:
            return prior.lyrics
        system, user = prompts.refine_lyrics_prompts(
            current_lyrics=prior.lyrics,
            feedback=feedback,
            title=title,
            use_extended_tags=request.use_extended_tags,
        )
        revised = await self._router.call_lyrics(system, user, trace=trace)
        return revised if revised is not None else prior.lyrics
