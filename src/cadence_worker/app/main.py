from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from ..services.exceptions import (
    CadenceError,
    GenerationError,
    ParseError,
    ValidationError,
)
from ..services.llm import LLMGateway
from ..services.refinement import RefinementEngine
from ..services.router import ModeRouter
from ..services.tasks import spawn_logged
from .routes import router
from .settings import Settings, get_settings


def _status_for(exc: CadenceError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, GenerationError):
        return 504 if exc.timed_out else 502
    if isinstance(exc, ParseError):
        return 502
    # InvariantError and anything unclassified are server faults.
    return 500


def _error_body(exc: CadenceError) -> dict[str, object]:
    body: dict[str, object] = {"error": exc.kind, "detail": str(exc)}
    if isinstance(exc, ValidationError) and exc.field:
        body["field"] = exc.field
    if isinstance(exc, (GenerationError, ParseError)):
        body["stage"] = exc.stage
    if exc.trace is not None:
        body["trace"] = exc.trace.model_dump(mode="json", exclude_none=True)
    return body


def create_app(
    settings: Optional[Settings] = None, gateway: Optional[LLMGateway] = None
) -> FastAPI:
    """Create and configure FastAPI instance."""
    settings = settings or get_settings()
    gateway = gateway or LLMGateway(settings)
    mode_router = ModeRouter(settings, gateway)
    refiner = RefinementEngine(settings, mode_router)

    async def _probe_local() -> None:
        status = await gateway.check_local_availability()
        app.state.local_status = status
        logger.info(
            "Local LLM probe: available={} model_installed={}",
            status.available,
            status.model_installed,
        )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if settings.use_local_llm:
            spawn_logged(_probe_local(), name="local-llm-probe")
        yield
        await gateway.close()

    app = FastAPI(title="Cadence Worker", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.gateway = gateway
    app.state.mode_router = mode_router
    app.state.refiner = refiner
    app.state.local_status = None

    @app.exception_handler(CadenceError)
    async def _handle_cadence_error(_: Request, exc: CadenceError) -> JSONResponse:
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error("request failed ({}): {}", exc.kind, exc)
        return JSONResponse(status_code=status_code, content=_error_body(exc))

    app.include_router(router)
    return app


app = create_app()
