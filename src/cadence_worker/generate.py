"""
CLI entry point to run a one-off generation (with optional refinement or remix) through the engine.

Example:
    python -m cadence_worker.generate --category lofi-study --seed 42 --max-mode
    python -m cadence_worker.generate --style "dream pop" --style shoegaze --lyrics --trace
    python -m cadence_worker.generate --style jazz --style soul --max-mode --remix genre
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional, get_args

from loguru import logger

from .app.models import GenerationRequest, GenerationResult, RemixField, VibeCategory
from .app.settings import Settings
from .services.exceptions import CadenceError
from .services.llm import LLMGateway
from .services.refinement import RefinementEngine
from .services.rng import SeededRng
from .services.router import ModeRouter
from .services.trace import serialize_trace


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate a music-style prompt via the Cadence engine.")
    parser.add_argument(
        "--style",
        action="append",
        default=[],
        help="Style tag used verbatim (direct mode); repeat up to four times.",
    )
    parser.add_argument(
        "--seed-genre",
        action="append",
        default=[],
        help="Genre to blend into an LLM-written style; repeatable.",
    )
    parser.add_argument(
        "--category",
        choices=[category.value for category in VibeCategory],
        default=None,
        help="Deterministic category preset (no LLM calls).",
    )
    parser.add_argument("--description", default="", help="Free-form idea for custom mode.")
    parser.add_argument("--lyrics-topic", default="", help="Topic for generated lyrics.")
    parser.add_argument("--genre-count", type=int, default=None, help="Exact genre count (1-4).")
    parser.add_argument("--max-mode", action="store_true", help="Render the Max dialect.")
    parser.add_argument("--lyrics", action="store_true", help="Also generate lyrics.")
    parser.add_argument("--wordless-vocals", action="store_true", help="Add wordless vocals.")
    parser.add_argument("--extended-tags", action="store_true", help="Section tags in lyrics.")
    parser.add_argument("--seed", type=int, default=None, help="Fixed RNG seed for reproducible runs.")
    parser.add_argument(
        "--refine",
        default=None,
        metavar="FEEDBACK",
        help="Refine the generated result once with this feedback text.",
    )
    parser.add_argument(
        "--remix",
        choices=list(get_args(RemixField)),
        default=None,
        help="Redraw this one field of the generated prompt from the genre registry.",
    )
    parser.add_argument(
        "--local-endpoint",
        default=None,
        help="Route LLM calls through this Ollama endpoint.",
    )
    parser.add_argument("--trace", action="store_true", help="Record a size-capped trace.")
    parser.add_argument(
        "--trace-dir",
        type=Path,
        default=None,
        help="Write the trace JSON here (defaults to worker settings).",
    )
    return parser.parse_args(argv)


def _print_result(label: str, result: GenerationResult) -> None:
    print(f"== {label} ==")
    print(f"title  : {result.title or '-'}")
    print("text   :")
    print(result.text)
    if result.lyrics:
        print("lyrics :")
        print(result.lyrics)


def _write_trace(result: GenerationResult, trace_dir: Optional[Path]) -> None:
    if result.trace is None or trace_dir is None:
        return
    trace_dir.mkdir(parents=True, exist_ok=True)
    path = trace_dir / f"trace-{result.trace.run_id}.json"
    payload = serialize_trace(result.trace)
    path.write_bytes(payload)
    print(f"trace  : {path} ({len(payload)} bytes)")


async def _run(args: argparse.Namespace) -> int:
    settings_kwargs: dict[str, object] = {}
    if args.local_endpoint:
        settings_kwargs["use_local_llm"] = True
        settings_kwargs["local_endpoint"] = args.local_endpoint
    if args.trace_dir is not None:
        settings_kwargs["trace_dir"] = args.trace_dir

    settings = Settings(**settings_kwargs)
    settings.ensure_directories()
    gateway = LLMGateway(settings)
    mode_router = ModeRouter(settings, gateway)
    refiner = RefinementEngine(settings, mode_router)

    request = GenerationRequest(
        style_tags=args.style,
        seed_genres=args.seed_genre,
        category=VibeCategory(args.category) if args.category else None,
        description=args.description,
        lyrics_topic=args.lyrics_topic,
        max_mode=args.max_mode,
        with_lyrics=args.lyrics,
        with_wordless_vocals=args.wordless_vocals,
        use_extended_tags=args.extended_tags,
        target_genre_count=args.genre_count,
    )
    rng = SeededRng(args.seed) if args.seed is not None else None
    try:
        result = await mode_router.route(request, rng=rng, trace=args.trace or None)
        _print_result("generated", result)
        _write_trace(result, settings.trace_dir)
        if args.refine is not None:
            refined = await refiner.refine(result, args.refine, request, trace=args.trace or None)
            _print_result("refined", refined)
            _write_trace(refined, settings.trace_dir)
        if args.remix is not None:
            remix_rng = SeededRng(args.seed) if args.seed is not None else None
            remixed = await mode_router.remix(
                result,
                args.remix,
                rng=remix_rng,
                trace=args.trace or None,
                target_genre_count=args.genre_count,
            )
            _print_result(f"remixed {args.remix}", remixed)
            _write_trace(remixed, settings.trace_dir)
    except CadenceError as exc:
        logger.error("generation failed ({}): {}", exc.kind, exc)
        return 1
    finally:
        await gateway.close()
    return 0


def main(argv: Optional[list[str]] = None) -> None:
    args = _parse_args(argv)
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
