from __future__ import annotations

import pytest
from conftest import ScriptedGateway, generation_failure

from cadence_worker.app.models import GenerationRequest, GenerationResult, VibeCategory
from cadence_worker.app.settings import Settings
from cadence_worker.services.exceptions import GenerationError, ParseError, ValidationError
from cadence_worker.services.formatter import MAX_MODE_HEADER
from cadence_worker.services.postprocess import extract_genres
from cadence_worker.services.rng import SeededRng
from cadence_worker.services.router import ModeRouter, resolve_mode

STYLE_REPLY = '{"style": "genre: \\"jazz, soul, funk\\"\\nmood: \\"calm\\"", "title": "Blue Hour"}'


def _router(settings: Settings, gateway: ScriptedGateway) -> ModeRouter:
    return ModeRouter(settings, gateway)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_rejects_more_than_four_style_tags(settings: Settings) -> None:
    gateway = ScriptedGateway()
    request = GenerationRequest(style_tags=["a", "b", "c", "d", "e"])
    with pytest.raises(ValidationError) as excinfo:
        await _router(settings, gateway).route(request)
    assert excinfo.value.field == "style_tags"
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_rejects_conflicting_modes(settings: Settings) -> None:
    gateway = ScriptedGateway()
    request = GenerationRequest(style_tags=["jazz"], category=VibeCategory.LOFI_STUDY)
    with pytest.raises(ValidationError) as excinfo:
        await _router(settings, gateway).route(request, trace=True)
    assert excinfo.value.field == "category"
    assert gateway.calls == []


def test_resolve_mode_ignores_blank_tags() -> None:
    mode = resolve_mode(GenerationRequest(style_tags=["  "], description="night drive"))
    assert type(mode).__name__ == "CustomMode"


@pytest.mark.asyncio
async def test_category_mode_is_reproducible_without_llm(settings: Settings) -> None:
    gateway = ScriptedGateway()
    router = _router(settings, gateway)
    request = GenerationRequest(category=VibeCategory.CAFE_COFFEESHOP, with_lyrics=True)
    first = await router.route(request, rng=SeededRng(42))
    second = await router.route(request, rng=SeededRng(42))
    assert first.text == second.text
    assert first.title == second.title
    assert first.lyrics is None
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_category_max_mode_uses_quoted_fields(settings: Settings) -> None:
    router = _router(settings, ScriptedGateway())
    request = GenerationRequest(
        category=VibeCategory.AMBIENT_FOCUS, max_mode=True, with_wordless_vocals=True
    )
    result = await router.route(request, rng=SeededRng(3))
    lines = result.text.splitlines()
    assert lines[0].startswith('Genre: "')
    assert lines[1].startswith('Mood: "')
    assert lines[2].startswith('Instruments: "')
    assert lines[2].endswith('wordless vocals"')


@pytest.mark.asyncio
async def test_direct_mode_keeps_styles_verbatim(settings: Settings) -> None:
    gateway = ScriptedGateway({"generate.title": ['"Neon Tide"']})
    request = GenerationRequest(style_tags=["dream pop", "shoegaze"])
    result = await _router(settings, gateway).route(request, rng=SeededRng(5))
    assert "Genre: dream pop, shoegaze" in result.text
    assert result.title == "Neon Tide"
    assert result.lyrics is None
    assert gateway.contexts == ["generate.title"]


@pytest.mark.asyncio
async def test_direct_mode_max_header(settings: Settings) -> None:
    request = GenerationRequest(style_tags=["house"], max_mode=True)
    result = await _router(settings, ScriptedGateway()).route(request, rng=SeededRng(5))
    assert result.text.startswith(MAX_MODE_HEADER)
    assert 'genre: "house"' in result.text


@pytest.mark.asyncio
async def test_direct_text_is_deterministic_for_seed(settings: Settings) -> None:
    router = _router(settings, ScriptedGateway())
    request = GenerationRequest(style_tags=["jazz", "rock"])
    first = await router.route(request, rng=SeededRng(9))
    second = await router.route(request, rng=SeededRng(9))
    assert first.text == second.text


@pytest.mark.asyncio
async def test_direct_title_failure_falls_back(settings: Settings) -> None:
    gateway = ScriptedGateway({"generate.title": [generation_failure("generate.title")]})
    result = await _router(settings, gateway).route(
        GenerationRequest(style_tags=["funk"]), rng=SeededRng(1), trace=True
    )
    assert result.title == "Untitled"
    assert result.trace is not None
    assert result.trace.stats.had_errors


@pytest.mark.asyncio
async def test_direct_lyrics(settings: Settings) -> None:
    gateway = ScriptedGateway({"generate.lyrics": ["[Verse]\nla la"]})
    request = GenerationRequest(style_tags=["soul"], with_lyrics=True, lyrics_topic="summer")
    result = await _router(settings, gateway).route(request, rng=SeededRng(1))
    assert result.lyrics == "[Verse]\nla la"
    assert gateway.contexts == ["generate.title", "generate.lyrics"]
    assert "summer" in gateway.calls[1][1]


@pytest.mark.asyncio
async def test_lyrics_failure_yields_none(settings: Settings) -> None:
    gateway = ScriptedGateway({"generate.lyrics": [generation_failure("generate.lyrics")]})
    request = GenerationRequest(style_tags=["soul"], with_lyrics=True)
    result = await _router(settings, gateway).route(request, rng=SeededRng(1))
    assert result.lyrics is None
    assert result.title == "Scripted Reply"


@pytest.mark.asyncio
async def test_custom_mode_parses_style_and_title(settings: Settings) -> None:
    gateway = ScriptedGateway({"generate.style": [STYLE_REPLY]})
    request = GenerationRequest(description="late train home", seed_genres=["jazz"])
    result = await _router(settings, gateway).route(request, rng=SeededRng(2))
    assert result.title == "Blue Hour"
    assert result.text == 'genre: "jazz, soul, funk"\nmood: "calm"'
    assert gateway.contexts == ["generate.style"]
    assert "late train home" in gateway.calls[0][1]


@pytest.mark.asyncio
async def test_custom_mode_enforces_genre_count(settings: Settings) -> None:
    gateway = ScriptedGateway({"generate.style": [STYLE_REPLY]})
    request = GenerationRequest(description="late train home", target_genre_count=2, max_mode=True)
    result = await _router(settings, gateway).route(request, rng=SeededRng(2))
    assert result.text.startswith(MAX_MODE_HEADER)
    assert extract_genres(result.text) == ["jazz", "soul"]


@pytest.mark.asyncio
async def test_custom_mode_condenses_long_styles() -> None:
    settings = Settings(llm_retry_backoff_seconds=0.0, max_prompt_chars=100)
    long_style = "warm " * 40
    gateway = ScriptedGateway(
        {
            "generate.style": [f'{{"style": "{long_style}", "title": "Long Road"}}'],
            "postprocess.condense": ["warm tape jazz, brushed drums"],
        }
    )
    result = await _router(settings, gateway).route(
        GenerationRequest(description="road trip"), rng=SeededRng(4)
    )
    assert result.text == "warm tape jazz, brushed drums"
    assert gateway.contexts == ["generate.style", "postprocess.condense"]


@pytest.mark.asyncio
async def test_custom_mode_rejects_condense_below_minimum() -> None:
    settings = Settings(llm_retry_backoff_seconds=0.0, max_prompt_chars=100, min_prompt_chars=20)
    long_style = "warm " * 40
    gateway = ScriptedGateway(
        {
            "generate.style": [f'{{"style": "{long_style}", "title": "Long Road"}}'],
            "postprocess.condense": ["jazz"],
        }
    )
    result = await _router(settings, gateway).route(
        GenerationRequest(description="road trip"), rng=SeededRng(4)
    )
    assert result.text == long_style.strip()


def test_resolve_mode_clamps_genre_count() -> None:
    mode = resolve_mode(GenerationRequest(description="x", target_genre_count=9))
    assert mode.target_genre_count == 4
    mode = resolve_mode(GenerationRequest(description="x", target_genre_count=0))
    assert mode.target_genre_count == 1


@pytest.mark.asyncio
async def test_custom_prompt_asks_for_clamped_genre_count(settings: Settings) -> None:
    gateway = ScriptedGateway({"generate.style": [STYLE_REPLY]})
    request = GenerationRequest(description="late train home", target_genre_count=9)
    result = await _router(settings, gateway).route(request, rng=SeededRng(2))
    user_prompt = gateway.calls[0][1]
    assert "Name exactly 4 genre(s)" in user_prompt
    assert "9" not in user_prompt
    assert len(extract_genres(result.text)) == 4


@pytest.mark.asyncio
async def test_remix_redraws_one_field_and_keeps_title_and_lyrics(settings: Settings) -> None:
    gateway = ScriptedGateway()
    prior = GenerationResult(
        text='genre: "jazz"\nmood: "smoky"\ninstruments: "upright bass"',
        title="Blue Hour",
        lyrics="[Verse]\nla la",
    )
    result = await _router(settings, gateway).remix(
        prior, "mood", rng=SeededRng(11), trace=True
    )
    lines = result.text.splitlines()
    assert lines[0] == 'genre: "jazz"'
    assert lines[2] == 'instruments: "upright bass"'
    assert lines[1].startswith('mood: "')
    assert result.title == "Blue Hour"
    assert result.lyrics == "[Verse]\nla la"
    assert gateway.calls == []
    assert result.trace is not None
    assert result.trace.action == "remix"
    assert any(
        event.type == "decision" and event.key.startswith("remix.mood")
        for event in result.trace.events
    )


@pytest.mark.asyncio
async def test_remix_rejects_empty_prompt(settings: Settings) -> None:
    with pytest.raises(ValidationError) as excinfo:
        await _router(settings, ScriptedGateway()).remix(GenerationResult(text="  "), "genre")
    assert excinfo.value.field == "prior.text"


@pytest.mark.asyncio
async def test_custom_mode_parse_failure_attaches_trace(settings: Settings) -> None:
    gateway = ScriptedGateway({"generate.style": ["I would rather not."]})
    with pytest.raises(ParseError) as excinfo:
        await _router(settings, gateway).route(
            GenerationRequest(description="anything"), rng=SeededRng(6), trace=True
        )
    trace = excinfo.value.trace
    assert trace is not None
    assert trace.events[0].type == "run.start"
    assert trace.events[-1].type == "error"
    assert trace.stats.had_errors
    assert trace.rng.seed == 6


@pytest.mark.asyncio
async def test_custom_mode_generation_failure_propagates(settings: Settings) -> None:
    gateway = ScriptedGateway({"generate.style": [generation_failure("generate.style")]})
    with pytest.raises(GenerationError):
        await _router(settings, gateway).route(GenerationRequest(description="anything"))


@pytest.mark.asyncio
async def test_trace_records_mode_decision(settings: Settings) -> None:
    router = _router(settings, ScriptedGateway())
    result = await router.route(
        GenerationRequest(category=VibeCategory.COZY_RAINY), rng=SeededRng(8), trace=True
    )
    trace = result.trace
    assert trace is not None
    assert trace.action == "generate"
    assert trace.events[0].type == "run.start"
    assert trace.events[-1].type == "run.end"
    decisions = [event for event in trace.events if event.type == "decision"]
    assert decisions[0].key == "router.mode"
    assert decisions[0].branch_taken == "category"
    assert trace.stats.llm_call_count == 0


@pytest.mark.asyncio
async def test_trace_disabled_by_default(settings: Settings) -> None:
    result = await _router(settings, ScriptedGateway()).route(
        GenerationRequest(category=VibeCategory.LOFI_CHILL)
    )
    assert result.trace is None
