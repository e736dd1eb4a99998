from __future__ import annotations

from typing import Optional, cast

from fastapi import APIRouter, Request

from ..services.llm import LLMGateway, LocalStatus
from ..services.refinement import RefinementEngine
from ..services.registry import get_registry
from ..services.rng import SeededRng
from ..services.router import ModeRouter
from .models import GenerateBody, GenerationResult, RefineBody, RemixBody
from .settings import Settings

router = APIRouter()


def get_mode_router(request: Request) -> ModeRouter:
    return cast(ModeRouter, request.app.state.mode_router)


def get_refiner(request: Request) -> RefinementEngine:
    return cast(RefinementEngine, request.app.state.refiner)


@router.get("/health")
async def health(request: Request) -> dict[str, object]:
    settings = cast(Settings, request.app.state.settings)
    gateway = cast(LLMGateway, request.app.state.gateway)
    local_status = cast(Optional[LocalStatus], getattr(request.app.state, "local_status", None))
    provider = gateway.provider_info()
    return {
        "status": "ok",
        "provider": provider.id,
        "model": provider.model,
        "locality": provider.locality,
        "local": local_status.as_dict() if local_status is not None else None,
        "registry_version": get_registry().version,
        "trace_enabled": settings.trace_enabled,
    }


@router.get("/categories")
async def categories() -> list[dict[str, str]]:
    registry = get_registry()
    return [
        {"id": category.value, "label": template.label}
        for category, template in registry.categories.items()
    ]


@router.post(
    "/generate", response_model=GenerationResult, response_model_exclude_none=True
)
async def generate(body: GenerateBody, request: Request) -> GenerationResult:
    rng = SeededRng(body.seed) if body.seed is not None else None
    return await get_mode_router(request).route(body.request, rng=rng, trace=body.trace)


@router.post("/refine", response_model=GenerationResult, response_model_exclude_none=True)
async def refine(body: RefineBody, request: Request) -> GenerationResult:
    return await get_refiner(request).refine(
        body.prior, body.feedback, body.request, trace=body.trace
    )


@router.post("/remix", response_model=GenerationResult, response_model_exclude_none=True)
async def remix(body: RemixBody, request: Request) -> GenerationResult:
    rng = SeededRng(body.seed) if body.seed is not None else None
    return await get_mode_router(request).remix(
        body.prior,
        body.field,
        rng=rng,
        trace=body.trace,
        target_genre_count=body.target_genre_count,
    )
